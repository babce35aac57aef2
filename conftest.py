"""Workspace-level pytest configuration and fixtures."""

import pytest

CLOUDANT_ENV_VARS = [
    "CLOUDANT_PROTOCOL",
    "CLOUDANT_HOST",
    "CLOUDANT_USERNAME",
    "CLOUDANT_PASSWORD",
    "CLOUDANT_ENDPOINT",
]


@pytest.fixture(autouse=True, scope="function")
def isolate_cloudant_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Automatically hide CLOUDANT_* variables from every test.

    Connection settings read from the environment take precedence over
    properties, so a developer's shell must never leak into test results.
    Tests that exercise the environment override set the variables themselves.
    """
    for var in CLOUDANT_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
