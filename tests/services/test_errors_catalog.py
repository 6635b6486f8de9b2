import pytest

from pgupgrader.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error(
        "upgrade_step_failed",
        from_version="15",
        to_version="16",
        work_dir="/srv/data/upgrades/16",
        backup="/srv/data/backups/data-14",
    )

    assert "Upgrade from 15 to 16 failed." in message
    assert "Suggested action: Inspect /srv/data/upgrades/16" in message
    assert "/srv/data/backups/data-14" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError, match="Unknown error catalog key"):
        actionable_error("no_such_code")
