#!/usr/bin/env python3
"""mailpath — follow one message-id through MTA log files."""

import logging
import sys
from argparse import ArgumentParser

from mailpath.config import ConfigError, load_config, load_yaml_config
from mailpath.merger import NoReadableSourcesError, trace
from mailpath.renderer import get_renderer
from mailpath.sources import expand_paths, open_sources

logger = logging.getLogger("mailpath")

EXIT_FOUND = 0
EXIT_NOT_FOUND = 1
EXIT_FAILURE = 2


def build_parser() -> ArgumentParser:
    """Build the CLI argument parser."""
    parser = ArgumentParser(
        prog="mailpath",
        description="Parse log files looking for what a mail went through.",
    )
    parser.add_argument(
        "message_id",
        help="Message-id to look for in the log files",
    )
    parser.add_argument(
        "files",
        nargs="*",
        help="Log file path(s) or glob pattern(s) (default: /var/log/**/mail*.log*)",
    )
    parser.add_argument(
        "--config",
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--format",
        choices=["text", "tree", "json"],
        default="text",
        help="Output format (default: text)",
    )
    parser.add_argument(
        "--color",
        action="store_true",
        help="Colorize output (ANSI)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Number of sources scanned concurrently (default: 4)",
    )
    parser.add_argument(
        "--year",
        type=int,
        help="Year of the newest syslog line (default: no later than the current month)",
    )
    parser.add_argument(
        "--no-bracket-fallback",
        dest="bracket_fallback",
        action="store_const",
        const=False,
        default=None,
        help="Do not retry <id> as a bare id when nothing is found",
    )
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print a per-source summary to stderr",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="More logging (-v info, -vv debug)",
    )
    return parser


def _level_name(level: str, verbose: int) -> str:
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return level


def setup_logging(level: str, verbose: int) -> None:
    logging.basicConfig(
        level=getattr(logging, _level_name(level, verbose), logging.WARNING),
        format="%(asctime)s [MAILPATH] %(levelname)s %(message)s",
        stream=sys.stderr,
    )


def set_log_level(level: str, verbose: int) -> None:
    """Apply the configured level once the config has been read."""
    logging.getLogger().setLevel(getattr(logging, _level_name(level, verbose), logging.WARNING))


def format_summary(reports) -> str:
    lines = ["Sources:"]
    for r in reports:
        if r.error:
            lines.append(f"  {r.label}  ERROR: {r.error}")
        else:
            lines.append(
                f"  {r.label}  {r.lines_read} lines, "
                f"{r.unrecognized} unrecognized, {r.matched} matched"
            )
    return "\n".join(lines)


def run(args) -> int:
    """Load config, trace the message, print the result. Returns the exit code."""
    # config loading logs too, so the handler goes up first
    setup_logging("WARNING", args.verbose)
    try:
        config = load_config(args, load_yaml_config(args.config))
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    set_log_level(config.log_level, args.verbose)
    logger.info("Config: workers=%d, year=%s, %d derived pattern(s)",
                config.workers, config.year, len(config.derived_patterns))

    try:
        paths = expand_paths(args.files, default_glob=config.default_glob)
        result = trace(
            args.message_id,
            open_sources(paths),
            patterns=config.derived_patterns,
            ignore_tags=config.ignore_tags,
            workers=config.workers,
            year=config.year,
            bracket_fallback=config.bracket_fallback,
        )
    except (FileNotFoundError, NoReadableSourcesError) as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    if args.summary:
        print(format_summary(result.reports), file=sys.stderr)

    print(get_renderer(args.format, color=args.color)(result))
    return EXIT_FOUND if result.found else EXIT_NOT_FOUND


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        code = run(args)
    except (KeyboardInterrupt, BrokenPipeError):
        sys.exit(0)
    sys.exit(code)


if __name__ == "__main__":
    main()
