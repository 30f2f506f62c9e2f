import logging

import pytest

from gallery_backend.core.config import Settings, validate_config


def _settings(**overrides):
    values = dict(
        DATABASE_URL="postgresql://localhost/gallery",
        STRIPE_SECRET_KEY="sk_test",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        CRON_SECRET="cron",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_complete_config_passes_strict():
    assert validate_config(strict=True, settings_obj=_settings()) is True


def test_missing_keys_warn_when_not_strict(caplog):
    logger = logging.getLogger("gallery.test_config")
    with caplog.at_level(logging.WARNING, logger="gallery.test_config"):
        assert validate_config(strict=False, settings_obj=_settings(CRON_SECRET=None), logger=logger) is True
    assert "CRON_SECRET" in caplog.text


def test_missing_keys_raise_when_strict():
    with pytest.raises(RuntimeError, match="STRIPE_WEBHOOK_SECRET"):
        validate_config(strict=True, settings_obj=_settings(STRIPE_WEBHOOK_SECRET=None))


def test_non_positive_policy_days_rejected_when_strict():
    with pytest.raises(RuntimeError, match="must be positive"):
        validate_config(strict=True, settings_obj=_settings(GRACE_PERIOD_DAYS=0))


def test_policy_defaults():
    cfg = _settings()
    assert cfg.GRACE_PERIOD_DAYS == 21
    assert cfg.DELETION_HORIZON_DAYS == 90
    assert cfg.DELETION_WARNING_LEAD_DAYS == 7
    assert cfg.FREE_PLAN_GALLERY_LIMIT == 3
