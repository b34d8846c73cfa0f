"""Subprocess helpers for the OGR tools that read S-57 cells.

The chart decoder runs ogrinfo to list the layers of a cell and ogr2ogr to
export each layer as GeoJSON on stdout. A failing or missing tool surfaces
as CommandError carrying whatever the tool wrote to stderr.

Example:
    List the layers of an S-57 cell:
        >>> from openenc.utils.gdal_helpers import run_command, CommandError

        >>> try:
        ...     listing = run_command(["ogrinfo", "-ro", "-q", "US5WA22M.000"])
        ... except CommandError as e:
        ...     print(f"Command failed: {e}")

    Export one layer as GeoJSON on stdout:
        >>> run_command([
        ...     "ogr2ogr", "-f", "GeoJSON", "/vsistdout/",
        ...     "US5WA22M.000", "DEPARE",
        ...     *s57_config_args(),
        ... ])
"""

from __future__ import annotations

import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

# Driver options: apply update files, drop primitives, split multipoint
# soundings and expose their depth as a Z coordinate.
S57_OPTIONS = (
    "RETURN_PRIMITIVES=OFF,RETURN_LINKAGES=OFF,LNAM_REFS=ON,"
    "UPDATES=APPLY,SPLIT_MULTIPOINT=ON,RECODE_BY_DSSI=ON,ADD_SOUNDG_DEPTH=ON"
)


class CommandError(RuntimeError):
    """An OGR tool exited with a non-zero status or could not be started.

    The message is the tool's stderr, or a note that it is not installed.

    Example:
        Handle command failures:
            >>> from openenc.utils.gdal_helpers import run_command, CommandError

            >>> try:
            ...     run_command(["ogrinfo", "-ro", "-q", "missing.000"])
            ... except CommandError as e:
            ...     print(f"GDAL command failed: {e}")
    """


def s57_config_args() -> list[str]:
    """``--config`` arguments making OGR read S-57 cells as charts expect."""
    return [
        "--config", "OGR_S57_OPTIONS", S57_OPTIONS,
        "--config", "OGR_ORGANIZE_POLYGONS", "ONLY_CCW",
    ]


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
) -> str:
    """Execute a command and return its standard output.

    Output is decoded as text; stderr is only kept for the error message.

    Args:
        command: Iterable arguments to execute (e.g., ["ogrinfo", "-ro", ...]).
        workdir: Optional working directory for the command execution.

    Returns:
        Everything the command wrote to stdout.

    Raises:
        CommandError: if the command exits with a non-zero status code or
            the executable is missing. The exception message contains the
            stderr output from the command.
    """
    args = [str(arg) for arg in command]
    try:
        result = subprocess.run(
            args,
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CommandError(f"{args[0]} is not installed") from exc
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")
    return result.stdout
