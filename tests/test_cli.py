"""Tests for the command-line entry point."""

import json

import pytest

from error_pipeline.durable_queue import DurableQueue
from main import main


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"queue:\n  directory: {tmp_path / 'queue'}\n")
    return str(path)


@pytest.fixture
def queue(tmp_path):
    return DurableQueue(str(tmp_path / "queue"))


def test_stats(config_file, queue, make_report, capsys):
    queue.enqueue(make_report())
    main(["--config", config_file, "stats"])
    out = json.loads(capsys.readouterr().out)
    assert out["pending"] == 1
    assert out["dead_letter"] == 0
    assert out["config"]["queue_dir"].endswith("queue")


def test_dead_letter_list_and_requeue(config_file, queue, make_report, capsys):
    entry = queue.enqueue(make_report(message="checkout failed"))
    queue.bury([entry.id], "HTTP 422")

    main(["--config", config_file, "dead-letter"])
    listing = capsys.readouterr().out
    assert entry.id in listing
    assert "HTTP 422" in listing

    main(["--config", config_file, "dead-letter", "--requeue"])
    assert "Requeued 1 entries" in capsys.readouterr().out
    assert len(DurableQueue(queue.directory)) == 1


def test_subcommand_required():
    with pytest.raises(SystemExit):
        main([])
