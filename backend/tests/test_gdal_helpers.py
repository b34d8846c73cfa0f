"""Unit tests for utilities in openenc.utils.gdal_helpers.

This module tests the low-level GDAL/OGR command execution helpers,
specifically the `run_command` function and CommandError handling.
Tests cover:
    - Successful command execution returning stdout (zero exit code)
    - Failure handling and error message propagation (nonzero exit code)
    - Missing executables

Monkeypatching is used to avoid actual subprocess execution, ensuring tests
are isolated, fast, and reliable.
"""

import pathlib
import subprocess
from typing import Any

import pytest

from openenc.utils import gdal_helpers


def test_run_command_success(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command with zero return code returns its stdout."""
    seen: dict[str, Any] = {}

    def fake_run(
        args: list[str],
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:
        """Mock subprocess.run to return a successful CompletedProcess."""
        seen["args"] = args
        return subprocess.CompletedProcess(
            args=args,
            returncode=0,
            stdout="1: DSID (None)\n",
            stderr="",
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    output = gdal_helpers.run_command(["ogrinfo", pathlib.Path("/enc/A.000")])
    assert output == "1: DSID (None)\n"
    assert seen["args"] == ["ogrinfo", "/enc/A.000"]


def test_run_command_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command errors raise CommandError with message."""

    def fake_run(
        *args: Any,
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            args=[],
            returncode=1,
            stdout="",
            stderr="fail",
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="fail"):
        gdal_helpers.run_command(["false"])


def test_run_command_missing_executable(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("ogr2ogr")

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="not installed"):
        gdal_helpers.run_command(["ogr2ogr"])


def test_s57_config_args() -> None:
    args = gdal_helpers.s57_config_args()
    assert args[:2] == ["--config", "OGR_S57_OPTIONS"]
    assert "UPDATES=APPLY" in args[2]
    assert "SPLIT_MULTIPOINT=ON" in args[2]
    assert args[3:] == ["--config", "OGR_ORGANIZE_POLYGONS", "ONLY_CCW"]
