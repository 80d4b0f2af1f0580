"""
sri-shield CLI
"""
import argparse
import asyncio
import os
import sys

import uvicorn
import yaml
from pydantic import ValidationError

from sri_shield.build import process_static_files
from sri_shield.config.loader import load_settings
from sri_shield.core.collection import PerPageHashes
from sri_shield.core.persistence import load_hashes_module
from sri_shield.errors import ShieldError
from sri_shield.logging_config import setup_logging
from sri_shield.middleware.csp_builder import build_page_csp


def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="sri-shield - SRI hashes and CSP headers for generated HTML",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Hash and patch every page of a build
  python -m sri_shield build --dist-dir dist --hashes-module src/generated/sri.py

  # Also emit a Netlify _headers file
  python -m sri_shield build --dist-dir dist --provider netlify

  # Print the CSP header for one page
  python -m sri_shield csp src/generated/sri.py blog/index.html

  # Serve dynamic pages through the hardening proxy
  SRI_SHIELD_UPSTREAM_URL=http://localhost:4321 python -m sri_shield serve
        """
    )
    parser.add_argument('--config', help='YAML settings file (defaults to the packaged one)')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    build_parser = subparsers.add_parser('build', help='Process a static build directory')
    build_parser.add_argument('--dist-dir', help='Build output directory')
    build_parser.add_argument('--hashes-module', help='Where to persist the hashes module')
    build_parser.add_argument('--provider', choices=['netlify', 'vercel'],
                              help='Hosting provider config to generate')
    build_parser.add_argument('--enable-middleware', action='store_true', default=None,
                              help='Warn when dynamic pages need a second build')

    csp_parser = subparsers.add_parser('csp', help='Print the CSP header value for one page')
    csp_parser.add_argument('hashes_module', help='Persisted hashes module')
    csp_parser.add_argument('page', help='Page path relative to the build directory')

    serve_parser = subparsers.add_parser('serve', help='Run the SRI/CSP reverse proxy')
    serve_parser.add_argument('--host', default='0.0.0.0', help='Interface to bind (default: 0.0.0.0)')
    serve_parser.add_argument('--port', type=int, help='Port to listen on (default: listen_port setting)')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = load_settings(args.config)
    except (ValidationError, yaml.YAMLError, OSError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1
    setup_logging(log_level=settings.log_level, json_format=settings.log_json)

    try:
        if args.command == 'build':
            return cmd_build(args, settings)
        elif args.command == 'csp':
            return cmd_csp(args, settings)
        elif args.command == 'serve':
            return cmd_serve(args, settings)
    except (ShieldError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def cmd_build(args, settings):
    """Execute build command"""
    overrides = {
        'dist_dir': args.dist_dir,
        'hashes_module': args.hashes_module,
        'provider': args.provider,
        'enable_middleware': args.enable_middleware,
    }
    settings = settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    if not settings.enable_static:
        print("Static SRI processing is disabled (enable_static: false)")
        return 0

    report = asyncio.run(process_static_files(settings))

    print(f"Pages scanned:      {report.pages}")
    print(f"Pages rewritten:    {report.pages_rewritten}")
    print(f"Nested resources:   {report.nested_resources}")
    if settings.hashes_module:
        state = "written" if report.hashes_module_written else "unchanged"
        print(f"Hashes module:      {settings.hashes_module} ({state})")
    if report.provider_config:
        print(f"Provider config:    {report.provider_config}")
    return 0


def cmd_csp(args, settings):
    """Execute csp command"""
    data = load_hashes_module(args.hashes_module)
    if data is None:
        print(f"Error: hashes module not found: {args.hashes_module}", file=sys.stderr)
        return 1

    page = (data.get('per_page_sri_hashes') or {}).get(args.page)
    if page is None:
        print(f"Error: no hashes recorded for page: {args.page}", file=sys.stderr)
        return 1

    hashes = PerPageHashes(scripts=set(page.get('scripts', [])), styles=set(page.get('styles', [])))
    print(build_page_csp(hashes, settings.csp_defaults or {}))
    return 0


def cmd_serve(args, settings):
    """Execute serve command"""
    # The app loads its own settings at startup; --config reaches it via env
    if args.config:
        os.environ["SRI_SHIELD_CONFIG_FILE"] = str(args.config)
    uvicorn.run(
        "sri_shield.main:app",
        host=args.host,
        port=args.port or settings.listen_port,
        log_config=None,
    )
    return 0


if __name__ == '__main__':
    sys.exit(main())
