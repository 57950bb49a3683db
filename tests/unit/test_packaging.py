"""Unit tests for the declared runtime dependencies."""

import re
import tomllib
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[2]

INSTRUMENTATION_IMPORT = re.compile(r"^\s*(?:from|import)\s+opentelemetry\.instrumentation\.(\w+)", re.MULTILINE)


def _declared_distributions() -> set:
    project = tomllib.loads((ROOT / "pyproject.toml").read_text())["project"]
    return {re.split(r"[<>=!~\[; ]", requirement, maxsplit=1)[0].lower() for requirement in project["dependencies"]}


def _imported_instrumentations() -> set:
    found = set()
    for path in (ROOT / "app").rglob("*.py"):
        found.update(INSTRUMENTATION_IMPORT.findall(path.read_text()))
    return found


@pytest.mark.unit
class TestDeclaredDependencies:

    def test_logging_instrumentation_declared(self):
        assert "opentelemetry-instrumentation-logging" in _declared_distributions()

    def test_every_imported_instrumentation_declared(self):
        imported = _imported_instrumentations()
        declared = _declared_distributions()

        assert "logging" in imported
        missing = sorted(
            name for name in imported if f"opentelemetry-instrumentation-{name.replace('_', '-')}" not in declared
        )
        assert missing == []
