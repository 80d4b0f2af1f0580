"""Ordered chain of response middleware."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog
from starlette.responses import Response

logger = structlog.get_logger()


@dataclass
class RequestContext:
    """Per-request state passed through the middleware pipeline."""

    request_id: str = ""
    path: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.request_id:
            self.request_id = uuid4().hex[:8]


class Middleware(abc.ABC):
    """Base class for middleware in the pipeline."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abc.abstractmethod
    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Process an outgoing response."""
        ...


def proxy_error(context: RequestContext) -> Response:
    """502 sent instead of a page that could not be hardened."""
    return Response(
        content="Internal proxy error",
        status_code=502,
        headers={"x-request-id": context.request_id},
    )


class MiddlewarePipeline:
    """Runs upstream responses through each middleware in registration order."""

    def __init__(self) -> None:
        self._middleware: list[Middleware] = []

    def add(self, middleware: Middleware) -> None:
        """Add a middleware to the end of the pipeline."""
        self._middleware.append(middleware)
        logger.info("middleware_registered", name=middleware.name)

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Run a response through all middleware.

        A middleware that raises fails the request closed: the client gets a
        502, never the body that skipped the remaining steps.
        """
        for mw in self._middleware:
            try:
                response = await mw.process_response(response, context)
            except Exception:
                logger.exception(
                    "middleware_response_error",
                    middleware=mw.name,
                    request_id=context.request_id,
                    path=context.path,
                )
                return proxy_error(context)
        return response
