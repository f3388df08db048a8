"""Tests for plugin validation."""

import pytest

from plugkeep.plugins.manifest import DependencySpec, PluginDescriptor
from plugkeep.plugins.validator import PluginValidator
from plugkeep.security.permissions import Capability


@pytest.fixture
def validator():
    return PluginValidator()


def file_descriptor(path, **kwargs) -> PluginDescriptor:
    defaults = {
        "name": path.stem,
        "version": "1.0.0",
        "permissions": frozenset({Capability.MEMORY_READ}),
        "source": "file",
        "location": str(path),
    }
    defaults.update(kwargs)
    return PluginDescriptor(**defaults)


def write_plugin(tmp_path, body: str, name: str = "clean"):
    path = tmp_path / f"{name}.py"
    path.write_text(body)
    return path


def test_clean_plugin_passes(validator, tmp_path):
    path = write_plugin(
        tmp_path,
        "import json\n"
        "from plugkeep.plugins.base import Plugin\n\n"
        "class Clean(Plugin):\n"
        "    async def load(self, config):\n"
        "        self.data = json.dumps(config)\n",
    )

    report = validator.validate(file_descriptor(path))

    assert report.passed
    assert report.errors == []
    assert "passed" in report.summary()


@pytest.mark.parametrize(
    "source,finding",
    [
        ("import subprocess\n", "banned import 'subprocess'"),
        ("import urllib.request\n", "banned import 'urllib.request'"),
        ("from urllib import request\n", "banned import 'urllib.request'"),
        ("from socket import socket\n", "banned import 'socket'"),
        ("import os\nos.system('ls')\n", "banned call 'os.system()'"),
        ("eval('1 + 1')\n", "banned call 'eval()'"),
        ("__import__('os')\n", "banned call '__import__()'"),
    ],
)
def test_security_scan_findings(validator, tmp_path, source, finding):
    path = write_plugin(tmp_path, source, name="sneaky")

    report = validator.validate(file_descriptor(path))

    assert not report.passed
    assert any(finding in error for error in report.errors)


def test_scan_reports_line_numbers(validator, tmp_path):
    path = write_plugin(tmp_path, "x = 1\n\nimport ctypes\n", name="native")

    report = validator.validate(file_descriptor(path))

    assert report.errors == ["native.py:3: banned import 'ctypes'"]


def test_scan_covers_package_modules(validator, tmp_path):
    package = tmp_path / "pkg"
    package.mkdir()
    (package / "__init__.py").write_text("from .helpers import run\n")
    (package / "helpers.py").write_text("import subprocess\n\ndef run():\n    pass\n")

    report = validator.validate(
        file_descriptor(package, name="pkg", source="directory", location=str(package))
    )

    assert any("helpers.py" in e for e in report.errors)


def test_allowed_imports_override(tmp_path):
    path = write_plugin(tmp_path, "import httpx\n", name="client")

    assert not PluginValidator().validate(file_descriptor(path)).passed
    assert PluginValidator(allowed_imports=frozenset({"httpx"})).validate(
        file_descriptor(path)
    ).passed


def test_syntax_error_is_reported(validator, tmp_path):
    path = write_plugin(tmp_path, "def broken(:\n", name="broken")

    report = validator.validate(file_descriptor(path))

    assert any("syntax error" in e for e in report.errors)


def test_missing_source(validator, tmp_path):
    report = validator.validate(file_descriptor(tmp_path / "gone.py"))

    assert any("not found" in e for e in report.errors)


@pytest.mark.parametrize("name", ["Bad", "1st", "has space", ""])
def test_invalid_names(validator, name):
    report = validator.validate(PluginDescriptor(name=name, version="1.0.0"))

    assert any("Invalid plugin name" in e for e in report.errors)


def test_invalid_version(validator):
    report = validator.validate(PluginDescriptor(name="p", version="one"))

    assert report.errors == ["Invalid version 'one'"]


def test_declaration_checks(validator):
    descriptor = PluginDescriptor(
        name="p",
        version="1.0.0",
        dependencies=(
            DependencySpec("p"),
            DependencySpec("q", ">=1.0"),
            DependencySpec("q", "<3"),
            DependencySpec("r", "whenever"),
        ),
        unknown_permissions=("shell.exec",),
    )

    report = validator.validate(descriptor)

    assert "Unknown permission 'shell.exec'" in report.errors
    assert "Plugin depends on itself" in report.errors
    assert "Duplicate dependency 'q'" in report.errors
    assert "Invalid version range 'whenever' for 'r'" in report.errors


def test_in_memory_plugin_warns(validator):
    report = validator.validate(PluginDescriptor(name="p", version="1.0.0"))

    assert report.passed
    assert "In-process plugin; static scan skipped" in report.warnings
    assert "Plugin requests no capabilities" in report.warnings
