import json
import threading

from cloning.models import Level
from scheduling.jobs import Job
from scheduling.stores import JobStore, LogStore

SOURCE = {"host": "src", "port": 3306, "user": "reader", "password": "pw", "database": "shop"}
TARGET = {"host": "dst", "port": 3306, "user": "writer", "password": "pw2", "database": "shop_copy"}


def test_job_store_round_trip(tmp_path):
    store = JobStore(str(tmp_path / "nested" / "jobs.json"))
    job = Job.create("Nightly", "0 2 * * *", SOURCE, TARGET)

    store.save([job])
    records = store.load()

    assert records == [job.to_dict()]
    assert Job.from_dict(records[0]) == job


def test_job_store_missing_or_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "jobs.json"
    assert JobStore(str(path)).load() == []
    path.write_text("{not json")
    assert JobStore(str(path)).load() == []


def test_log_query_is_newest_first_and_filtered(tmp_path):
    store = LogStore(str(tmp_path / "logs.jsonl"))
    store.append(Level.INFO, "one", job_id="a", job_name="A")
    store.append(Level.ERROR, "two", job_id="b", job_name="B")
    store.append(Level.WARNING, "three", job_id="a", job_name="A")
    store.append(Level.ERROR, "four", job_id="a", job_name="A")

    entries, total = store.query()
    assert total == 4
    assert [e.message for e in entries] == ["four", "three", "two", "one"]

    entries, total = store.query(job_id="a", level="error")
    assert (total, [e.message for e in entries]) == (1, ["four"])

    entries, total = store.query(job_id="a", limit=1, offset=1)
    assert (total, [e.message for e in entries]) == (3, ["three"])


def test_log_entries_survive_reload(tmp_path):
    path = str(tmp_path / "logs.jsonl")
    store = LogStore(path)
    store.append(Level.SUCCESS, "done", job_id="a", metadata={"durationMs": 12})

    reloaded = LogStore(path)
    assert reloaded.load() == 1
    entries, _ = reloaded.query()
    assert entries[0].message == "done"
    assert entries[0].level is Level.SUCCESS
    assert entries[0].metadata == {"durationMs": 12}


def test_log_store_is_bounded_and_compacts_file(tmp_path):
    path = tmp_path / "logs.jsonl"
    store = LogStore(str(path), max_entries=5)
    for i in range(12):
        store.append(Level.INFO, f"entry {i}")

    entries, total = store.query(limit=100)
    assert total == 5
    assert entries[0].message == "entry 11"
    lines = path.read_text().splitlines()
    assert len(lines) <= 10
    assert json.loads(lines[-1])["message"] == "entry 11"


def test_malformed_log_lines_are_skipped(tmp_path):
    path = tmp_path / "logs.jsonl"
    store = LogStore(str(path))
    store.append(Level.INFO, "good")
    with open(path, "a") as f:
        f.write("garbage\n")

    reloaded = LogStore(str(path))
    assert reloaded.load() == 1


def test_clear_scoped_to_one_job(tmp_path):
    path = str(tmp_path / "logs.jsonl")
    store = LogStore(path)
    store.append(Level.INFO, "a1", job_id="a")
    store.append(Level.INFO, "b1", job_id="b")
    store.append(Level.INFO, "a2", job_id="a")

    assert store.clear(job_id="a") == 2
    assert [e.message for e in store.query()[0]] == ["b1"]

    reloaded = LogStore(path)
    reloaded.load()
    assert [e.message for e in reloaded.query()[0]] == ["b1"]

    assert store.clear() == 1
    assert store.query() == ([], 0)


def test_stats_count_by_level_and_job(tmp_path):
    store = LogStore(str(tmp_path / "logs.jsonl"))
    assert store.stats() == {
        "total": 0,
        "byLevel": {"info": 0, "success": 0, "warning": 0, "error": 0},
        "byJob": {},
    }
    store.append(Level.INFO, "x", job_id="a")
    store.append(Level.ERROR, "y", job_id="a")
    store.append(Level.ERROR, "z", job_id="b")
    store.append(Level.WARNING, "interactive")

    stats = store.stats()
    assert stats["total"] == 4
    assert stats["byLevel"] == {"info": 1, "success": 0, "warning": 1, "error": 2}
    assert stats["byJob"] == {"a": 2, "b": 1}


def test_concurrent_appends_are_all_kept(tmp_path):
    path = tmp_path / "logs.jsonl"
    store = LogStore(str(path), max_entries=1000)

    def writer(job_id):
        for i in range(50):
            store.append(Level.INFO, f"{job_id}-{i}", job_id=job_id)

    threads = [threading.Thread(target=writer, args=(f"job{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.query(limit=1000)[1] == 200
    assert len(path.read_text().splitlines()) == 200
