"""Tests for the manual operation scripts."""
from unittest.mock import patch

import pytest

from edulure_sync.scripts import dispatch_once, run_reconciliation, run_sync


def test_dispatch_once_ticks_both_queues(app, capsys):
    with patch.object(dispatch_once, "create_app", return_value=app):
        assert dispatch_once.main(["--recover"]) == 0

    out = capsys.readouterr().out
    assert "Recovered dispatches: 0" in out
    assert "Webhook deliveries claimed: 0" in out
    assert "Domain event dispatches claimed: 0" in out


def test_run_sync_reports_disabled_integration(app, capsys):
    with patch.object(run_sync, "create_app", return_value=app):
        assert run_sync.main(["--integration", "hubspot"]) == 1

    assert "did not run" in capsys.readouterr().out


def test_run_sync_requires_integration():
    with pytest.raises(SystemExit):
        run_sync.main([])


def test_run_reconciliation_with_nothing_enabled(app):
    with patch.object(run_reconciliation, "create_app", return_value=app):
        assert run_reconciliation.main([]) == 0
