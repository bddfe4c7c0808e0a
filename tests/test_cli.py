"""Tests for the rolloutctl command line client."""

import asyncio
import json

import pytest
from click.testing import CliRunner

from conftest import reconcile_until_settled

from sentinel_rollout.cli import (
    EXIT_INVALID_REVISION,
    EXIT_NO_ACTIVE_ROLLOUT,
    EXIT_NOT_FOUND,
    EXIT_OK,
    main,
)


@pytest.fixture
def run(api_client):
    """Invoke rolloutctl against the in-process control API."""
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(main, list(args), obj={"client": api_client})

    return invoke


@pytest.fixture
def spec_file(tmp_path):
    """Write a workload spec file for an image."""

    def write(image: str) -> str:
        path = tmp_path / f"{image.replace(':', '-')}.json"
        path.write_text(
            json.dumps({"replicas": 2, "template": {"image": image}, "policy": {"max_surge": 1}})
        )
        return str(path)

    return write


def settle(plane) -> None:
    asyncio.run(reconcile_until_settled(plane.orchestrator, "web"))


class TestRolloutctl:
    """Test cases for rolloutctl commands."""

    def test_apply_and_status(self, run, spec_file):
        """Test applying a spec and showing its status."""
        applied = run("apply", "web", "-f", spec_file("web:1"))
        status = run("status", "web")

        assert applied.exit_code == EXIT_OK
        assert "Applied web generation 1" in applied.output
        assert status.exit_code == EXIT_OK
        assert "Phase:     Idle" in status.output

    def test_status_json(self, run, spec_file, plane):
        """Test JSON output of a settled workload."""
        run("apply", "web", "-f", spec_file("web:1"))
        settle(plane)

        result = run("-o", "json", "status", "web")

        data = json.loads(result.output)
        assert data["phase"] == "Completed"
        assert data["current_revision"] == 1

    def test_status_not_found(self, run):
        """Test an unknown workload exits with the not found code."""
        result = run("status", "missing")

        assert result.exit_code == EXIT_NOT_FOUND

    def test_pause_without_rollout(self, run, spec_file):
        """Test pausing with nothing in flight exits with the no active rollout code."""
        run("apply", "web", "-f", spec_file("web:1"))

        result = run("pause", "web")

        assert result.exit_code == EXIT_NO_ACTIVE_ROLLOUT

    def test_rollback_invalid_revision(self, run, spec_file, plane):
        """Test rolling back to a missing revision exits with the invalid revision code."""
        run("apply", "web", "-f", spec_file("web:1"))
        settle(plane)

        result = run("rollback", "web", "--to-revision", "7")

        assert result.exit_code == EXIT_INVALID_REVISION

    def test_rollback_previous(self, run, spec_file, plane):
        """Test rolling back to the previous revision."""
        run("apply", "web", "-f", spec_file("web:1"))
        settle(plane)
        run("apply", "web", "-f", spec_file("web:2"))
        settle(plane)

        result = run("rollback", "web")

        assert result.exit_code == EXIT_OK
        assert "Rolling web back to revision 1" in result.output

    def test_delete(self, run, spec_file):
        """Test deleting a workload."""
        run("apply", "web", "-f", spec_file("web:1"))

        deleted = run("delete", "web")
        again = run("delete", "web")

        assert deleted.exit_code == EXIT_OK
        assert again.exit_code == EXIT_NOT_FOUND

    def test_invalid_spec_file(self, run, tmp_path):
        """Test a spec file that is not JSON is an error."""
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        result = run("apply", "web", "-f", str(path))

        assert result.exit_code == 1
