import json
from unittest.mock import patch

import pytest

from ingest_queue.cli import main
from ingest_queue.config import ENV_OVERRIDES
from ingest_queue.queue import JobStatus, SQLiteStore


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Run the CLI from an empty directory with no config or env overrides."""
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return str(tmp_path / "cli.db")


def run(db, *args):
    main([*args, "--db", db])


def jobs(db):
    store = SQLiteStore(db)
    try:
        return store.list_jobs()
    finally:
        store.close()


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["ingest-queue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_queue_help():
    with pytest.raises(SystemExit) as exc_info:
        main(["queue", "retry", "--help"])
    assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    main([])
    captured = capsys.readouterr()
    assert "usage:" in captured.out.lower()


def test_cli_enqueue_and_status(cli_env, capsys):
    run(cli_env, "enqueue", "--type", "ingest_image", "--input",
        json.dumps({"storage_path": "u1/a.jpg", "mime_type": "image/jpeg"}), "--created-by", "u1")
    assert "Enqueued job 1" in capsys.readouterr().out

    run(cli_env, "queue", "status")
    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Queued:               1" in out
    assert jobs(cli_env)[0].created_by == "u1"


def test_cli_enqueue_invalid_json(cli_env, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run(cli_env, "enqueue", "--type", "ingest_pdf", "--input", "{oops")
    assert exc_info.value.code == 1
    assert "not valid JSON" in capsys.readouterr().err


def test_cli_enqueue_invalid_input(cli_env, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run(cli_env, "enqueue", "--type", "ai_generate_cards", "--input", "{}")
    assert exc_info.value.code == 1
    assert "Invalid input for ai_generate_cards" in capsys.readouterr().err


def test_cli_worker_empty_queue(cli_env, capsys):
    run(cli_env, "worker")
    assert json.loads(capsys.readouterr().out) == {"processed": 0, "jobs": []}


def test_cli_upload_and_drain(cli_env, tmp_path, capsys):
    source = tmp_path / "storage" / "ingest" / "u1" / "a.jpg"
    source.parent.mkdir(parents=True)
    source.write_bytes(b"jpeg")

    run(cli_env, "upload", "--path", "u1/a.jpg", "--mime-type", "image/jpeg", "--owner", "u1")
    result = json.loads(capsys.readouterr().out)
    assert result["status"] == "queued"

    run(cli_env, "queue", "drain")
    out = capsys.readouterr().out
    assert "Done:                 1" in out
    assert jobs(cli_env)[0].status == JobStatus.DONE


def test_cli_tick(cli_env, capsys):
    run(cli_env, "tick", "--iterations", "2", "--delay", "0")
    data = json.loads(capsys.readouterr().out)
    assert data["summary"] == {"totalProcessed": 0, "totalJobs": 2}


def test_cli_tick_rejects_out_of_range(cli_env, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run(cli_env, "tick", "--iterations", "50")
    assert exc_info.value.code == 1
    assert "iterations must be between" in capsys.readouterr().err


def test_cli_retry_all_failed(cli_env, capsys):
    run(cli_env, "enqueue", "--type", "ingest_image", "--input",
        json.dumps({"storage_path": "u1/missing.jpg", "mime_type": "image/jpeg"}))
    run(cli_env, "queue", "drain")
    assert jobs(cli_env)[0].status == JobStatus.FAILED

    run(cli_env, "queue", "retry", "--all")
    assert "Requeued 1 job(s)" in capsys.readouterr().out
    assert jobs(cli_env)[0].status == JobStatus.QUEUED


def test_cli_reclaim_and_cleanup(cli_env, capsys):
    run(cli_env, "queue", "reclaim", "--minutes", "5")
    run(cli_env, "queue", "cleanup", "--days", "7")
    out = capsys.readouterr().out
    assert "Reclaimed 0 stuck job(s): []" in out
    assert "Deleted 0 terminal job(s)" in out


def test_cli_health(cli_env, capsys):
    run(cli_env, "health")
    assert json.loads(capsys.readouterr().out)["healthy"] is True
