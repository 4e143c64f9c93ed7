"""Command line interface for checking and running lab stages.

This is effectively all of the argparse and completer logic - the imports in this
file are kept minimal so that tab completion stays fast. (Use lazy imports where it
makes sense/is feasible.)

This file contains a ``__name__ == "__main__"`` and can be run directly.
"""

import argparse
import sys

import argcomplete


def _list_subdirs(config_key: str) -> list[str]:
    # NOTE: importing "lazily" to reduce startup time of CLI
    import os

    from labbook import utils

    config = utils.get_configuration()
    path = config[config_key]
    if not os.path.isdir(path):
        return []
    return sorted(
        name for name in os.listdir(path) if os.path.isdir(os.path.join(path, name))
    )


def completer_samples(**kwargs) -> list[str]:
    """Argcomplete sample name completer, lists the sample directories."""
    return _list_subdirs("samples_path")


def completer_experiments(**kwargs) -> list[str]:
    """Argcomplete experiment name completer, lists the experiment directories."""
    return _list_subdirs("experiments_path")


def _setup_logging(args, config, command: str):
    import datetime
    import logging
    import os

    from labbook import utils

    log_path = None
    if not args.no_log and command == "run":
        timestamp = datetime.datetime.now().strftime(utils.TIMESTAMP_FORMAT)
        log_path = os.path.join(config["logs_path"], f"labbook_{timestamp}.log")

    utils.init_logging(
        log_path,
        level=logging.DEBUG if args.verbose else logging.INFO,
        no_color=args.no_color,
        quiet=args.quiet,
        plain=args.plain,
    )


def cmd_status(args, lab):
    from rich import get_console

    from labbook import reporting

    statuses = lab.status(args.sample, args.experiment)
    get_console().print(reporting.status_table(statuses))


def cmd_graph(args, lab):
    from labbook import reporting

    statuses = lab.status(args.sample, args.experiment)
    graph = reporting.map_stage_graph(statuses)
    if args.output is None:
        print(graph.source)
        return
    with open(args.output, "w") as outfile:
        outfile.write(reporting.render_graph(graph))


def cmd_run(args, lab):
    from labbook.locks import CONFIG, CORPUS, EXPERIMENT, SAMPLE

    if args.stage == CORPUS:
        return lab.run_corpus(force=args.force)
    if args.sample is None:
        raise ValueError(f"Running the {args.stage} stage requires --sample.")
    if args.stage == SAMPLE:
        return lab.run_sample(args.sample, args.sample_args, force=args.force)
    if args.stage == CONFIG:
        return lab.run_config(args.sample, force=args.force)
    if args.stage == EXPERIMENT:
        if args.experiment is None or args.script is None:
            raise ValueError(
                "Running the experiment stage requires --experiment and --script."
            )
        return lab.run_experiment(
            args.experiment,
            args.sample,
            args.script,
            revision=args.revision,
            force=args.force,
        )


def cmd_invalidate(args, lab):
    lab.invalidate(args.stage, args.sample, args.experiment)


def cmd_setup(args, lab):
    import logging

    repo = lab.repo
    if repo.is_cloned():
        logging.info("Fetching BitFunnel in '%s'", repo.get_path())
        repo.fetch()
    else:
        repo.clone()
    repo.configure_build()
    repo.build()


def build_parser() -> argparse.ArgumentParser:
    from labbook.locks import STAGE_NAMES

    parser = argparse.ArgumentParser(
        prog="labbook",
        description="Check and run the stages of a BitFunnel lab (corpus -> sample -> config -> experiment).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    labbook run corpus
    labbook run sample --sample small --sample-arg=-fraction --sample-arg=0.1
    labbook run config --sample small
    labbook run experiment --sample small --experiment latency --script scripts/latency.txt
    labbook status --sample small --experiment latency
    labbook invalidate config --sample small
""",
    )

    display_parser = argparse.ArgumentParser(add_help=False)
    display_group = display_parser.add_argument_group(
        "Display", "Configure console output."
    )
    display_group.add_argument(
        "-v", "--verbose", dest="verbose", action="store_true", help="Log at debug level."
    )
    display_group.add_argument(
        "--quiet",
        dest="quiet",
        action="store_true",
        help="Suppress all log output to console.",
    )
    display_group.add_argument(
        "--no-color", dest="no_color", action="store_true", help="Less fancy colors."
    )
    display_group.add_argument(
        "--plain",
        dest="plain",
        action="store_true",
        help="Print normal logging rather than rich colored logs. This will output the exact same text printed into the file log.",
    )
    display_group.add_argument(
        "--no-log",
        dest="no_log",
        action="store_true",
        help="Specify this flag to not store the log of a run.",
    )

    stage_parser = argparse.ArgumentParser(add_help=False)
    stage_parser.add_argument(
        "-s",
        "--sample",
        dest="sample",
        default=None,
        help="The name of the sample to use.",
    ).completer = completer_samples
    stage_parser.add_argument(
        "-e",
        "--experiment",
        dest="experiment",
        default=None,
        help="The name of the experiment to use.",
    ).completer = completer_experiments

    subparsers = parser.add_subparsers(help="Commands:", dest="command")
    subparsers.required = True

    subparsers.add_parser(
        "status",
        help="Show the cache state of each stage.",
        parents=[stage_parser, display_parser],
    )

    graph_parser = subparsers.add_parser(
        "graph",
        help="Output a graphviz map of the stages and their cache state.",
        parents=[stage_parser, display_parser],
    )
    graph_parser.add_argument(
        "-o",
        "--output",
        dest="output",
        default=None,
        help="Render the map as svg into this file, rather than printing the dot source.",
    )

    run_parser = subparsers.add_parser(
        "run",
        help="Run a stage if its cache isn't valid.",
        parents=[stage_parser, display_parser],
    )
    run_parser.add_argument("stage", choices=STAGE_NAMES)
    run_parser.add_argument(
        "--sample-arg",
        dest="sample_args",
        action="append",
        help="An extra argument to pass to BitFunnel's filter command when drawing a sample. Can be specified multiple times.",
    )
    run_parser.add_argument(
        "--script",
        dest="script",
        default=None,
        help="The BitFunnel repl script an experiment runs.",
    )
    run_parser.add_argument(
        "--revision",
        dest="revision",
        default=None,
        help="Check out and build this BitFunnel revision before running an experiment.",
    )
    run_parser.add_argument(
        "--force",
        dest="force",
        action="store_true",
        help="Run the stage even if its cache is valid or stale. Its dependencies still need to be cached.",
    )
    run_parser.add_argument(
        "--dry",
        dest="dry",
        action="store_true",
        help="Only check the stage and report what would happen.",
    )
    run_parser.add_argument(
        "--no-verify",
        dest="no_verify",
        action="store_true",
        help="Don't recompute a cached stage's own signature to check it for tampering.",
    )

    invalidate_parser = subparsers.add_parser(
        "invalidate",
        help="Remove a stage's lock file so it runs again next time.",
        parents=[stage_parser, display_parser],
    )
    invalidate_parser.add_argument("stage", choices=STAGE_NAMES)

    subparsers.add_parser(
        "setup",
        help="Clone (or fetch), configure, and build BitFunnel.",
        parents=[display_parser],
    )

    return parser


COMMANDS = {
    "status": cmd_status,
    "graph": cmd_graph,
    "run": cmd_run,
    "invalidate": cmd_invalidate,
    "setup": cmd_setup,
}


def main(argv: list[str] = None) -> int:
    """'Main' command line entrypoint, parses command line flags and runs the
    requested command.

    Returns:
        The process exit code.
    """
    parser = build_parser()
    argcomplete.autocomplete(parser, always_complete_options=False)
    args = parser.parse_args(argv)

    import logging
    import subprocess

    from labbook import bfrepo, utils
    from labbook.experiment import LabBook
    from labbook.staging import LockProtocolError, PipelineRunner

    config = utils.get_configuration()
    _setup_logging(args, config, args.command)

    runner = PipelineRunner(
        verify_integrity=not getattr(args, "no_verify", False),
        dry=getattr(args, "dry", False),
    )
    lab = LabBook(config, runner=runner)

    try:
        COMMANDS[args.command](args, lab)
    except LockProtocolError as e:
        logging.error(str(e))
        return 1
    except (
        bfrepo.RepositoryError,
        subprocess.CalledProcessError,
        OSError,
        ValueError,
    ) as e:
        logging.error("%s: %s", type(e).__name__, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
