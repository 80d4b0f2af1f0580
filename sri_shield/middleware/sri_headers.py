"""SRI + CSP middleware for dynamically rendered HTML responses."""

from __future__ import annotations

from email.message import Message

import structlog
from starlette.responses import Response

from sri_shield.context import ShieldContext
from sri_shield.core.scanner import rewrite_dynamic_page
from sri_shield.middleware.csp_builder import CSP_HEADER, build_page_csp
from sri_shield.middleware.pipeline import Middleware, RequestContext, proxy_error

logger = structlog.get_logger()


def response_charset(content_type: str) -> str:
    """Charset named by a ``Content-Type`` value, ``utf-8`` when absent."""
    msg = Message()
    msg["content-type"] = content_type
    return msg.get_content_charset() or "utf-8"


class SRIHeaders(Middleware):
    """Inject integrity attributes into HTML responses and patch their CSP.

    - Only ``text/html`` responses are touched
    - Elements that fail validation are removed from the markup (see
      :func:`~sri_shield.core.scanner.rewrite_dynamic_page`)
    - When CSP is enabled, configured directives < upstream CSP < page hashes
    - An HTML body that cannot be buffered or decoded is answered with a 502
    """

    def __init__(self, shield: ShieldContext) -> None:
        self._shield = shield

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        content_type = response.headers.get("content-type", "")
        if "text/html" not in content_type.lower():
            return response

        # StreamingResponse and friends have no buffered body to rewrite
        body_bytes = getattr(response, "body", None)
        if body_bytes is None:
            logger.error(
                "sri_html_not_buffered",
                response_type=type(response).__name__,
                request_id=context.request_id,
                path=context.path,
            )
            return proxy_error(context)

        charset = response_charset(content_type)
        try:
            body_text = body_bytes.decode(charset)
        except (UnicodeDecodeError, LookupError):
            logger.error(
                "sri_undecodable_body",
                charset=charset,
                request_id=context.request_id,
                path=context.path,
            )
            return proxy_error(context)

        result = rewrite_dynamic_page(
            body_text,
            self._shield.global_hashes,
            allow_inline_scripts=self._shield.allow_inline_scripts,
            allow_inline_styles=self._shield.allow_inline_styles,
        )
        context.extra["page_hashes"] = result.page_hashes

        if result.content != body_text:
            response.body = result.content.encode(charset)
            response.headers["content-length"] = str(len(response.body))

        if self._shield.csp_directives is not None:
            response.headers[CSP_HEADER] = build_page_csp(
                result.page_hashes,
                self._shield.csp_directives,
                response.headers.get(CSP_HEADER),
            )
        return response
