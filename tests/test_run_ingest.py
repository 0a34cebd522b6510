"""
Ingestion service entry point.
"""

from unittest.mock import MagicMock, patch

import pytest

from scripts.run_ingest import main
from screenmem.core.errors import CaptureSourceError, StartupError


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.run_cycle.return_value = MagicMock(total=2, per_app={"Chrome": {"success": 2}})
    with patch("scripts.run_ingest.validate_config", return_value=[]), \
         patch("scripts.run_ingest.ensure_data_directories"), \
         patch("scripts.run_ingest.signal.signal"), \
         patch("scripts.run_ingest.IngestionOrchestrator.from_config", return_value=orch):
        yield orch


def test_once_runs_single_cycle(orchestrator):
    assert main(["--once"]) == 0

    orchestrator.initialize.assert_called_once()
    orchestrator.run_cycle.assert_called_once()
    orchestrator.run_forever.assert_not_called()
    orchestrator.shutdown.assert_called_once()


def test_once_with_source_down(orchestrator):
    orchestrator.run_cycle.side_effect = CaptureSourceError("refused")

    assert main(["--once"]) == 1
    orchestrator.shutdown.assert_called_once()


def test_loop_mode_shuts_down_after_loop(orchestrator):
    assert main([]) == 0
    orchestrator.run_forever.assert_called_once()
    orchestrator.shutdown.assert_called_once()


def test_startup_error_exits_nonzero(orchestrator):
    orchestrator.initialize.side_effect = StartupError("cannot open database")

    assert main(["--once"]) == 1
    orchestrator.run_cycle.assert_not_called()


def test_test_connection(orchestrator):
    orchestrator.capture_client.test_connection.return_value = {"healthy": True, "errors": []}
    assert main(["--test-connection"]) == 0
    orchestrator.initialize.assert_not_called()


def test_config_issues_exit_before_startup():
    with patch("scripts.run_ingest.validate_config", return_value=["Invalid VECTOR_PROVIDER: x"]), \
         patch("scripts.run_ingest.IngestionOrchestrator.from_config") as from_config:
        assert main([]) == 1
    from_config.assert_not_called()
