"""Command line entry point for the step compiler.

Usage:
    # Preview what would be generated (nothing is written)
    stepcompiler compile journeys/JRN-0001.md --out generated

    # Write the tests, then verify them in a browser with bounded self-healing
    stepcompiler compile journeys/ --out generated --commit --verify --base-url https://app.example.com

    # Serve the HTTP API
    stepcompiler serve --port 8000

Exit codes: 0 compiled (and passing when verified), 2 blocked steps,
3 verification failed, 1 structural or generation-conflict error.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .core.config import load_config
from .core.errors import StepCompilerError
from .services.compile_service import CompileService
from .services.outcome import EXIT_ERROR, BatchOutcome

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepcompiler",
        description="Compile natural-language journeys into pytest-playwright tests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stepcompiler compile journeys/JRN-0001.md --out generated
  stepcompiler compile journeys/ --out generated --commit --verify
  stepcompiler serve --port 8000
        """,
    )
    parser.add_argument("--env-file", type=Path, help="Read settings from this .env file")
    parser.add_argument("--verbose", action="store_true", help="Verbose output")
    commands = parser.add_subparsers(dest="command", required=True)

    compile_cmd = commands.add_parser("compile", help="Compile journey documents")
    compile_cmd.add_argument("journeys", nargs="+", type=Path, metavar="JOURNEY",
                             help="Journey files or directories of *.md journeys")
    compile_cmd.add_argument("--out", type=Path, help="Output directory (default: STEPC_OUTPUT_DIR or generated)")
    mode = compile_cmd.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", dest="dry_run", action="store_true", default=None,
                      help="Report what would change without writing (default)")
    mode.add_argument("--commit", dest="dry_run", action="store_false", help="Write generated files")
    compile_cmd.add_argument("--no-modules", action="store_true",
                             help="Do not rewrite module files; report missing element functions")
    compile_cmd.add_argument("--catalog", type=Path, help="Selector catalog JSON")
    compile_cmd.add_argument("--knowledge", type=Path, help="Knowledge-base suggestions JSON")
    compile_cmd.add_argument("--application", help="Application name used in selector-debt reports")
    compile_cmd.add_argument("--verify", action="store_true", default=None,
                             help="Run the generated tests and heal locator failures")
    compile_cmd.add_argument("--max-heal-attempts", type=int, help="Heal budget per journey (default: 2)")
    compile_cmd.add_argument("--timeout", type=float, help="Per-run verification timeout in seconds")
    compile_cmd.add_argument("--workers", type=int, help="Journeys compiled in parallel")
    compile_cmd.add_argument("--verify-workers", type=int, help="Journeys verified in parallel")
    compile_cmd.add_argument("--base-url", help="Base URL passed to pytest-playwright")
    compile_cmd.add_argument("--browser", choices=["chromium", "firefox", "webkit"], help="Browser for verification")
    compile_cmd.add_argument("--headed", action="store_true", help="Show the browser during verification")
    compile_cmd.add_argument("--json", action="store_true", help="Print the batch outcome as JSON")
    compile_cmd.add_argument("--verbose", action="store_true", default=argparse.SUPPRESS, help="Verbose output")

    serve_cmd = commands.add_parser("serve", help="Run the HTTP API")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8000)
    return parser


def print_summary(batch: BatchOutcome) -> None:
    for outcome in batch.outcomes:
        print(f"{outcome.status.value.upper():<20} {outcome.journey_id}  "
              f"({outcome.mapped_count}/{outcome.total_steps} steps mapped)")
        for blocked in outcome.blocked_steps:
            print(f"    step {blocked.step}: {blocked.reason}")
            if blocked.suggestion:
                print(f"        suggestion: {blocked.suggestion}")
        for debt in outcome.selector_debt:
            print(f"    selector debt: {debt['selector']} -> {debt['remediation']}")
        if outcome.error:
            print(f"    error: {outcome.error.get('message')}")
        for warning in outcome.warnings:
            print(f"    warning: {warning}")
    mode = "dry run, nothing written" if batch.dry_run else f"{len(batch.files)} file(s) written"
    print(f"\n{len(batch.outcomes)} journey(s); {mode}; exit {batch.exit_code}")


def run_compile(args: argparse.Namespace) -> int:
    config = load_config(args.env_file).with_overrides(
        output_dir=args.out,
        dry_run=args.dry_run,
        generate_modules=False if args.no_modules else None,
        catalog_path=args.catalog,
        knowledge_path=args.knowledge,
        application=args.application,
        verify=args.verify,
        max_heal_attempts=args.max_heal_attempts,
        verify_timeout=args.timeout,
        max_workers=args.workers,
        verify_concurrency=args.verify_workers,
        base_url=args.base_url,
        browser=args.browser,
        headless=False if args.headed else None,
    )
    try:
        service = CompileService(config)
    except StepCompilerError as exc:
        logger.error("%s", exc)
        return EXIT_ERROR

    batch = service.compile_paths(args.journeys)
    if args.json:
        print(json.dumps(batch.to_dict(), indent=2, sort_keys=True))
    else:
        print_summary(batch)
    return batch.exit_code


def run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("stepcompiler.api.main:app", host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "serve":
        return run_serve(args)
    return run_compile(args)


if __name__ == "__main__":
    sys.exit(main())
