"""Tests for building and validating the runtime context."""

from __future__ import annotations

import pytest

from stockledger import runtime


def test_load_runtime_context_reads_settings(config_factory):
    bundle = config_factory(store_name="Corner Shop", max_retries=5)
    context = runtime.load_runtime_context(bundle.config_path)
    try:
        assert context.settings.store_name == "Corner Shop"
        assert context.settings.max_retries == 5
        assert context.engine.dialect.name == "sqlite"
    finally:
        runtime.dispose_context(context)


def test_load_runtime_context_missing_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        runtime.load_runtime_context(tmp_path / "absent.ini")


def test_ensure_schema_version_rejects_mismatch(config_factory):
    context = runtime.load_runtime_context(config_factory(schema_version="2.0.0").config_path)
    try:
        with pytest.raises(RuntimeError, match="Schema mismatch"):
            runtime.ensure_schema_version(context)
    finally:
        runtime.dispose_context(context)


def test_unit_of_work_uses_context_session_factory(runtime_context):
    with runtime_context.unit_of_work() as session:
        assert session.get_bind() is runtime_context.engine
