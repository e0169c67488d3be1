"""命令行入口：提交 NIfTI 处理作业并监控至终态。

退出码：
- 0：作业成功完成；
- 1：作业失败、被取消或监控超时；
- 2：配置或输入错误。
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import httpx

from nifti_batch.application.container import get_job_client_service, shutdown_container_resources
from nifti_batch.config import get_settings
from nifti_batch.domain.errors import AuthenticationError, ConfigurationError, IdentityProviderError, MonitorCancelledError
from nifti_batch.infra.logging.setup import configure_logging, shutdown_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _parse_parameter(text: str) -> tuple[str, str]:
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"parameter must look like KEY=VALUE: {text!r}")
    return key.strip(), value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nifti-batch", description="NIfTI batch processing client")
    commands = parser.add_subparsers(dest="command", required=True)

    submit = commands.add_parser("submit", help="Upload input files, submit a job and monitor it")
    submit.add_argument("files", nargs="+", type=Path, help="Input .nii files")
    submit.add_argument("--output-dir", type=Path, default=None, help="Directory for downloaded outputs")
    submit.add_argument("--timeout", type=float, default=None, help="Monitor timeout in seconds")
    submit.add_argument(
        "--param",
        dest="params",
        action="append",
        type=_parse_parameter,
        default=[],
        help="Job parameter KEY=VALUE, may be repeated",
    )
    submit.add_argument(
        "--no-final-output",
        dest="final_output",
        action="store_false",
        help="Skip downloading the final job output",
    )
    return parser


def _run_submit(args: argparse.Namespace) -> int:
    settings = get_settings()
    output_dir = args.output_dir.resolve() if args.output_dir is not None else settings.output_dir

    service = get_job_client_service()
    outcome = service.run(
        list(args.files),
        dict(args.params),
        output_dir=output_dir,
        download_final_output=args.final_output,
        timeout_seconds=args.timeout,
    )
    return EXIT_OK if outcome.succeeded else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings, process_role="client")
    try:
        if args.command == "submit":
            return _run_submit(args)
        return EXIT_CONFIG
    except ConfigurationError as exc:
        logger.error("invalid configuration", extra={"event": "cli.config.invalid", "error": str(exc)})
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except (TimeoutError, MonitorCancelledError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except (AuthenticationError, IdentityProviderError, httpx.HTTPError) as exc:
        logger.exception(
            "job submission failed",
            extra={"event": "cli.submit.failed", "error_type": type(exc).__name__, "error": str(exc)},
        )
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        shutdown_container_resources()
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
