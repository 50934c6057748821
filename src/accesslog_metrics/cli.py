import argparse
import logging
import sys
from typing import List, Optional, Tuple

import uvicorn

from accesslog_metrics import config
from accesslog_metrics.app import create_app
from accesslog_metrics.errors import AccessLogError
from accesslog_metrics.line_parser import LogParser
from accesslog_metrics.metrics import LogMetrics
from accesslog_metrics.pipeline import ExtractorRequest, FilterRequest, PipelineBuilder
from accesslog_metrics.processor import LineProcessor
from accesslog_metrics.tailer import LogTailer, TailSupervisor

logger = logging.getLogger(__name__)


class UsageError(Exception):
    pass


def parse_match(value: str) -> FilterRequest:
    """FIELD:REGEX"""
    parts = value.split(":", 1)
    if len(parts) != 2:
        raise UsageError("--match needs 2 arguments separated by ':'")
    return FilterRequest(field=parts[0], kind="regex", pattern=parts[1])


def parse_label(value: str) -> ExtractorRequest:
    """LABEL:TARGET:FIELD:REGEX, the regex has to match somewhere in the field."""
    parts = value.split(":", 3)
    if len(parts) != 4:
        raise UsageError("--label needs 4 arguments separated by ':'")
    label, target, field, regex = parts
    return ExtractorRequest(
        field=field,
        label=label,
        kind="regex",
        pattern=f"^.*{regex}.*$",
        template=target,
    )


def parse_bind(value: str) -> Tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise UsageError("Invalid address: use ip:port format, for example 127.0.0.1:9898")
    return host.strip("[]"), int(port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accesslog-metrics",
        description="Exports Prometheus metrics by reading a log stream",
    )
    parser.add_argument("file", metavar="FILE", help="The log file to watch")
    parser.add_argument("log_format", metavar="LOG_FORMAT", help="The nginx log_format setting")
    parser.add_argument(
        "-b", "--bind",
        default=config.BIND,
        help=f"The address:port to listen on (default: {config.BIND})",
    )
    parser.add_argument(
        "-m", "--match",
        action="append",
        default=[],
        help="Only lines where <field> matches <regex> (FIELD:REGEX)",
    )
    parser.add_argument(
        "-l", "--label",
        action="append",
        default=[],
        help="Set <label> to <value> from <field> with <regex> (LABEL:VALUE:FIELD:REGEX)",
    )
    return parser


def build_tailer(args: argparse.Namespace) -> LogTailer:
    log_parser = LogParser.from_format(args.log_format)
    builder = PipelineBuilder(log_parser)
    for value in args.match:
        builder.add_filter_request(parse_match(value))
    for value in args.label:
        builder.add_extractor_request(parse_label(value))
    pipeline = builder.build()

    metrics = LogMetrics(pipeline.labels)
    return LogTailer(args.file, LineProcessor(pipeline), metrics)


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=config.LOG_LEVEL.upper(), format=config.LOG_FORMAT)

    try:
        host, port = parse_bind(args.bind)
        tailer = build_tailer(args)
    except (UsageError, AccessLogError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(tailer.metrics, TailSupervisor(tailer))

    logger.info("Starting server at %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=config.LOG_LEVEL)
