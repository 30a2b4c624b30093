# shipci_workflow.py
# Pipeline for shipci itself: lint, tests on several Pythons, packaging check
from __future__ import annotations

from shipci.dsl import job, sh, uses, wf


def pipeline():
    return wf(
        "shipci",
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            uses("Checkout", "checkout"),
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests", ignore_failure=True),
        ),

        # Test job - one instance per interpreter
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q", timeout=900),
            needs=["lint"],
            matrix={"python": ["3.10", "3.11", "3.12"]},
        ),

        # Config check - validates project configuration
        job(
            "config-check",
            sh("Validate pyproject.toml", "python -c 'import tomllib; tomllib.load(open(\"pyproject.toml\", \"rb\"))'"),
        ),

        # Report job - always runs so failures are summarized
        job(
            "summary",
            sh("Summarize", "echo \"test=${{ needs.test.result }} config=${{ needs.config-check.result }}\""),
            needs=["test", "config-check"],
            when="always()",
        ),
        push=["main", "feature/**"],
        pull_request=["main"],
    )
