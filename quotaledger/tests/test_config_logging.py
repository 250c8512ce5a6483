"""
Configuration validation and structured logging helpers.
"""
import json
import logging

import pytest

from quotaledger.core.config import Settings, validate_config
from quotaledger.core.logging import (
    JsonFormatter,
    PrettyFormatter,
    RequestIdFilter,
    latency_bucket_ms,
    log_event,
    request_id_ctx_var,
    safe_truncate,
)


def _record(msg="usage.recorded", **extra):
    record = logging.LogRecord("quotaledger.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestValidateConfig:
    def test_defaults_are_valid(self):
        assert validate_config(strict=True, settings_obj=Settings(ENV="test", TIER_LIMITS_JSON=None)) is True

    def test_production_requires_database_url(self):
        cfg = Settings(ENV="production", DATABASE_URL=None, TIER_LIMITS_JSON=None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            validate_config(strict=True, settings_obj=cfg)

    def test_bad_tier_table_is_reported(self):
        cfg = Settings(ENV="test", TIER_LIMITS_JSON="{not json")
        with pytest.raises(RuntimeError, match="Tier limit table"):
            validate_config(strict=True, settings_obj=cfg)

    def test_missing_tier_file_is_reported(self, tmp_path):
        cfg = Settings(ENV="test", TIER_LIMITS_JSON=None, TIER_LIMITS_FILE=str(tmp_path / "missing.json"))
        with pytest.raises(RuntimeError, match="Tier limit table"):
            validate_config(strict=True, settings_obj=cfg)

    def test_non_strict_only_warns(self, caplog):
        cfg = Settings(ENV="production", DATABASE_URL=None, TIER_LIMITS_JSON=None)
        with caplog.at_level(logging.WARNING, logger="quotaledger"):
            assert validate_config(strict=False, settings_obj=cfg) is False
        assert "Missing required configuration: DATABASE_URL" in caplog.text

    def test_admin_roles_parsed(self):
        cfg = Settings(ADMIN_ROLES=" super_admin, ops ,,")
        assert cfg.admin_roles() == ["SUPER_ADMIN", "OPS"]


class TestLogging:
    def test_json_formatter_includes_structured_fields(self):
        record = _record(request_id="rid-1", organization_id="acme", resource_type="export", error_code=None)
        payload = json.loads(JsonFormatter().format(record))
        assert payload["message"] == "usage.recorded"
        assert payload["level"] == "INFO"
        assert payload["request_id"] == "rid-1"
        assert payload["organization_id"] == "acme"
        assert payload["resource_type"] == "export"
        assert "error_code" not in payload
        assert payload["timestamp"].endswith("Z")

    def test_pretty_formatter(self):
        line = PrettyFormatter().format(_record(request_id="rid-1", organization_id="acme"))
        assert "[rid=rid-1]" in line
        assert "[org=acme]" in line
        assert line.endswith("usage.recorded")

    def test_request_id_filter_uses_context(self):
        token = request_id_ctx_var.set("ctx-rid")
        try:
            record = _record()
            assert RequestIdFilter().filter(record) is True
            assert record.request_id == "ctx-rid"

            explicit = _record(request_id="explicit")
            RequestIdFilter().filter(explicit)
            assert explicit.request_id == "explicit"
        finally:
            request_id_ctx_var.reset(token)

    def test_log_event_truncates_extra(self, caplog):
        with caplog.at_level(logging.INFO, logger="quotaledger"):
            log_event(
                "info",
                "admin.subscription_transition",
                request_id="rid-9",
                organization_id="acme",
                actor_id="admin-1",
                event_type="suspended",
                extra={"reason": "x" * 600},
            )
        record = next(r for r in caplog.records if r.getMessage() == "admin.subscription_transition")
        assert record.organization_id == "acme"
        assert record.event_type == "suspended"
        assert record.request_id == "rid-9"
        assert record.reason.endswith("...<truncated>")
        assert len(record.reason) == 500 + len("...<truncated>")

    def test_safe_truncate_short_values_unchanged(self):
        assert safe_truncate("short") == "short"
        assert safe_truncate(42) == "42"

    @pytest.mark.parametrize("latency, bucket", [
        (None, "unknown"),
        (3, "<10ms"),
        (50, "10-100ms"),
        (250, "100-500ms"),
        (750, "500-1000ms"),
        (5000, ">=1000ms"),
    ])
    def test_latency_buckets(self, latency, bucket):
        assert latency_bucket_ms(latency) == bucket
