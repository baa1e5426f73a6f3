import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from animikii.config import RuntimeConfig, load_config, parse_inline_config
from animikii.constants import LOGBOOK_FILE
from animikii.runtime import (
    Effect,
    RuntimeLog,
    hash_log,
    load_logbook,
    record_run,
    show_logbook,
)


@pytest.fixture
def temp_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_runtime_log_marks_and_can_be_disabled():
    log = RuntimeLog()
    log.append("send:actor_0:msg0")
    mark = log.mark()
    log.append("task:0:completed")
    assert log.since(mark) == ["task:0:completed"]
    assert len(log) == 2

    quiet = RuntimeLog(enabled=False)
    quiet.append("ignored")
    assert quiet.entries == []


def test_effect_rejects_unknown_grades():
    assert Effect("pure", 1).log == []
    with pytest.raises(ValueError):
        Effect("meta", 1)


def test_bind_keeps_the_stronger_grade_and_joins_logs():
    first = Effect("state", 2, ["task:0:completed"])
    bound = first.bind(lambda value: Effect("pure", value * 10, ["doubled"]))
    assert (bound.grade, bound.value, bound.log) == ("state", 20, ["task:0:completed", "doubled"])
    assert bound.bind(lambda value: Effect("io", value)).grade == "io"


def test_record_run_round_trips_through_the_logbook(temp_dir, capsys):
    show_logbook()
    assert "No logbook yet." in capsys.readouterr().out

    effect = Effect("state", {"steps": 3, "completed": 2, "faulted": 1}, ["spawn:task:0:a", "task:0:completed"])
    entry = record_run(effect, label="demo")
    assert entry["hash"] == hash_log(effect.log)

    entries = load_logbook(LOGBOOK_FILE)
    assert len(entries) == 1
    assert entries[0]["label"] == "demo"
    assert entries[0]["steps"] == 3
    assert entries[0]["first_log"] == "spawn:task:0:a"
    assert entries[0]["last_log"] == "task:0:completed"

    show_logbook(limit=1)
    output = capsys.readouterr().out
    assert "demo" in output
    assert "steps=3 faulted=1" in output


def test_config_defaults_and_normalisation():
    config = RuntimeConfig()
    assert config.shards == 1
    assert config.mailbox_capacity is None
    assert config.logbook_path == LOGBOOK_FILE

    config = RuntimeConfig(shards="2", channel_capacity="none", trace="off", max_steps="10")
    assert config.shards == 2
    assert config.channel_capacity is None
    assert config.trace is False
    assert config.max_steps == 10

    with pytest.raises(ValueError):
        RuntimeConfig(shards=0)
    with pytest.raises(ValueError):
        RuntimeConfig(mailbox_capacity=-1)
    with pytest.raises(ValueError):
        RuntimeConfig(trace="maybe")


def test_load_config_accepts_every_supported_source(tmp_path):
    settings = {"shards": 3, "mailbox_capacity": 8, "trace": False}
    assert load_config(None) == RuntimeConfig()
    assert load_config(settings).shards == 3
    assert load_config({"runtime": settings}).mailbox_capacity == 8
    assert load_config(json.dumps(settings)).trace is False
    assert load_config(RuntimeConfig(shards=4)).shards == 4

    path = tmp_path / "animikii.json"
    path.write_text(json.dumps(settings), encoding="utf-8")
    assert load_config(path).shards == 3
    assert load_config(str(path)).mailbox_capacity == 8

    inline = load_config("shards = 2\n# comment\nchannel_capacity: 0")
    assert inline.shards == 2
    assert inline.channel_capacity == 0

    assert load_config({"threads": 5, "mailbox": 2}).to_dict()["shards"] == 5

    with pytest.raises(ValueError):
        load_config({"shardz": 2})
    with pytest.raises(TypeError):
        load_config(42)
    with pytest.raises(ValueError):
        parse_inline_config("not a setting!")
