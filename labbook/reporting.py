"""Rendering of stage status: graphviz maps of the stage graph and rich console tables."""

import logging

from graphviz import Digraph, ExecutableNotFound
from rich.table import Table

from labbook.experiment import StageStatus
from labbook.locks import STAGE_DEPENDENCIES

STATE_COLORS = {
    "valid cache": "darkseagreen2",
    "not cached": "silver",
    "stale": "peachpuff",
    "missing dependency": "thistle",
    "corrupt": "salmon",
    "unreadable": "salmon",
    "error": "salmon",
}

COLOR_VALS = {  # because apparently some of graphviz color names aren't websafe
    "darkseagreen2": "#b4eeb4",
    "thistle": "#d8bfd8",
    "peachpuff": "#ffdab9",
    "salmon": "#fa8072",
    "silver": "#c0c0c0",
}

RICH_STYLES = {
    "valid cache": "green",
    "not cached": "dim",
    "stale": "yellow",
    "missing dependency": "magenta",
    "corrupt": "bold red",
    "unreadable": "red",
    "error": "red",
}


def _get_color(state: str) -> str:
    name = STATE_COLORS.get(state, "white")
    return COLOR_VALS.get(name, name)


def map_stage_graph(statuses: list[StageStatus]) -> Digraph:
    """Create a graphviz dot graph of the stages in ``statuses`` and the dependency
    edges between them, each stage filled according to its cache state.

    Important:
        Rendering the returned graph requires the graphviz executable.
    """
    dot = Digraph()
    dot.attr(rankdir="LR")
    dot.attr(nodesep=".2")
    dot.attr(ranksep=".3")

    present = set()
    for status in statuses:
        present.add(status.stage)
        label = f"{status.stage}\n{status.directory}\n{status.state}"
        dot.node(
            status.stage,
            label,
            shape="box",
            style="filled",
            fillcolor=_get_color(status.state),
            fontsize="12",
        )

    for status in statuses:
        for dependency in STAGE_DEPENDENCIES[status.stage]:
            if dependency in present:
                dot.edge(dependency, status.stage)

    dot.format = "svg"
    return dot


def render_graph(graph: Digraph) -> str:
    """Attempts to return the unicode text for the graph svg."""
    try:
        return graph.pipe().decode("utf-8")
    except ExecutableNotFound:
        logging.error(
            "Graphviz not installed, if using conda try 'conda install python-graphviz'."
        )
        return "<p style='color: red'>No graphviz executable found, cannot render stage maps.</p>"


def status_table(statuses: list[StageStatus]) -> Table:
    """Build a rich table summarizing the status of each stage."""
    table = Table(title="Lab stages")
    table.add_column("Stage")
    table.add_column("Directory")
    table.add_column("Locked")
    table.add_column("State")
    for status in statuses:
        style = RICH_STYLES.get(status.state, "")
        table.add_row(
            status.stage,
            status.directory,
            "yes" if status.locked else "no",
            f"[{style}]{status.state}[/{style}]" if style != "" else status.state,
        )
    return table
