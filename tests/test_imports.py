"""Tests that every package entry point imports on its own."""

import subprocess
import sys

import pytest


@pytest.mark.parametrize(
    "module",
    [
        "authflow.core.protocol",
        "authflow.core.sessions",
        "authflow.core.flows",
        "authflow.core.saml",
        "authflow.storage",
        "authflow.app",
        "authflow.cli.main",
    ],
)
def test_module_imports_first(module: str) -> None:
    """Test the module imports cleanly as the first authflow import of a process."""
    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        timeout=60,
    )
    assert result.returncode == 0, result.stderr


def test_binding_shared_with_saml_constants() -> None:
    """Test SAML code and the protocol layer use the same Binding enum."""
    from authflow.core.protocol import Binding
    from authflow.core.saml import constants

    assert constants.Binding is Binding
    assert Binding.HTTP_POST == "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
