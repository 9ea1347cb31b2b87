from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .config import BuildEnvironment, load_build_config, render_zip_name
from .core import AbiDriftDetected, GkiGuardError, write_json
from .kmi import check_files, print_report, write_markdown_report
from .pipeline import GkiBuild, configure_logging
from .telegram import TelegramNotifier


def add_check_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("manifest", help="ABI manifest (libabigail XML, JSON manifest or symbol list).")
    parser.add_argument("version_record", help="Version record produced by the build (e.g. out/Module.symvers).")
    parser.add_argument("--report", help="Write the check result as JSON to path.")
    parser.add_argument("--markdown-report", help="Write the check result as Markdown to path.")


def command_check(args: argparse.Namespace) -> int:
    manifest_path = Path(args.manifest).resolve()
    record_path = Path(args.version_record).resolve()
    result = check_files(manifest_path, record_path)

    if args.report:
        payload = result.as_dict()
        payload["manifest"] = str(manifest_path)
        payload["version_record"] = str(record_path)
        write_json(Path(args.report).resolve(), payload)
    if args.markdown_report:
        write_markdown_report(Path(args.markdown_report).resolve(), result, manifest_path, record_path)

    print_report(result)
    return 0 if result.passed else 1


def command_build(args: argparse.Namespace) -> int:
    config = load_build_config(Path(args.config).resolve())
    env = BuildEnvironment.from_environ()
    workdir = Path(args.workdir).resolve()
    workdir.mkdir(parents=True, exist_ok=True)

    notifier = None
    if env.telegram_token and env.telegram_chat_id and not args.no_notify:
        notifier = TelegramNotifier(env.telegram_token, env.telegram_chat_id)

    build = GkiBuild(config=config, env=env, workdir=workdir, notifier=notifier)
    configure_logging(build.log_path, verbose=args.verbose)
    try:
        build.run()
    except AbiDriftDetected as exc:
        print(f"gki-guard error: {exc}", file=sys.stderr)
        return 1
    return 0


def command_zip_name(args: argparse.Namespace) -> int:
    config = load_build_config(Path(args.config).resolve())
    print(render_zip_name(config.zip_name, args.linux_version, config.variant, args.build_date))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gki-guard",
        description="GKI kernel build pipeline with a KMI symbol compatibility gate.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Check a build's symbol versions against an ABI manifest.")
    add_check_arguments(check)
    check.set_defaults(func=command_check)

    build = sub.add_parser("build", help="Run the full kernel build pipeline.")
    build.add_argument("--config", required=True, help="Path to build config JSON.")
    build.add_argument("--workdir", default=".", help="Working directory for sources and artifacts (default: current directory).")
    build.add_argument("--no-notify", action="store_true", help="Do not send Telegram notifications.")
    build.add_argument("--verbose", action="store_true", help="Echo command output to the console.")
    build.set_defaults(func=command_build)

    zip_name = sub.add_parser("zip-name", help="Print the zip name resolved from the config template.")
    zip_name.add_argument("--config", required=True, help="Path to build config JSON.")
    zip_name.add_argument("--linux-version", required=True, help="Kernel version substituted for KVER.")
    zip_name.add_argument("--build-date", help="Build date substituted for BUILD_DATE (omit for release builds).")
    zip_name.set_defaults(func=command_zip_name)

    return parser


def build_check_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kmi-check",
        description="Verify that every symbol in an ABI manifest is exported with the expected version.",
    )
    add_check_arguments(parser)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except GkiGuardError as exc:
        print(f"gki-guard error: {exc}", file=sys.stderr)
        return 2


def kmi_check_main(argv: list[str] | None = None) -> int:
    args = build_check_parser().parse_args(argv)
    try:
        return command_check(args)
    except GkiGuardError as exc:
        print(f"kmi-check error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
