import orjson

from callcoach.metrics import TurnLog, latency_stats, read_turn_metrics, summarize_file, summarize_turns


def write_turn(fp, turn, rt, llm, tts, used_knowledge=False, skipped=0, joined=0):
    fp.write(
        orjson.dumps(
            {
                "evt": "turn_metrics",
                "call_id": "test",
                "turn": turn,
                "rt_ms": rt,
                "retrieval_ms": 40,
                "llm_ms": llm,
                "rewrite_ms": 0,
                "tts_ms": tts,
                "used_knowledge": used_knowledge,
                "skipped": skipped,
                "joined": joined,
            }
        ).decode("utf-8")
        + "\n"
    )


def test_metrics_p50_p95(tmp_path):
    metrics_file = tmp_path / "turns.ndjson"

    with metrics_file.open("w", encoding="utf-8") as f:
        # rt_ms: 1420, 1480, 1510, 1530, 1590, 1610
        write_turn(f, 1, 1420, 700, 350, used_knowledge=True)
        write_turn(f, 2, 1480, 720, 360)
        write_turn(f, 3, 1510, 760, 370, joined=1)
        write_turn(f, 4, 1530, 740, 355)
        write_turn(f, 5, 1590, 800, 380, used_knowledge=True)
        write_turn(f, 6, 1610, 820, 390)

    turns = read_turn_metrics(metrics_file)
    assert len(turns) == 6

    summary = summarize_turns(turns)
    assert summary["rt_ms"]["count"] == 6
    assert 1480 <= summary["rt_ms"]["p50"] <= 1530
    assert 1590 <= summary["rt_ms"]["p95"] <= 1610

    top = summarize_file(metrics_file)
    assert top["turns"] == 6
    assert top["used_knowledge"] == 2
    assert top["joined"] == 1
    assert top["skipped"] == 0
    assert top["metrics"]["llm_ms"]["p50"] >= 740
    assert top["metrics"]["tts_ms"]["p95"] >= 380


def test_skipped_duplicates_are_counted_not_timed(tmp_path):
    metrics_file = tmp_path / "turns.ndjson"
    with metrics_file.open("w", encoding="utf-8") as f:
        write_turn(f, 1, 1500, 700, 300)
        write_turn(f, 2, 3, 0, 0, skipped=1)
        f.write("not json\n\n")
        f.write(orjson.dumps({"evt": "something_else"}).decode("utf-8") + "\n")

    top = summarize_file(metrics_file)
    assert top["turns"] == 1
    assert top["skipped"] == 1
    assert top["metrics"]["rt_ms"] == {"count": 1, "p50": 1500, "p95": 1500}


def test_missing_file_summarizes_to_zero(tmp_path):
    top = summarize_file(tmp_path / "nope.ndjson")
    assert top["turns"] == 0
    assert top["metrics"]["rt_ms"]["count"] == 0


def test_turn_log_appends_and_clears(tmp_path):
    path = tmp_path / "deep" / "turns.ndjson"
    log = TurnLog(str(path))
    log.append({"evt": "turn_metrics", "rt_ms": 10})
    log.append({"evt": "turn_metrics", "rt_ms": 20, "skipped": 1})
    assert [t["rt_ms"] for t in log.events()] == [10, 20]
    assert log.summary()["skipped"] == 1
    assert log.summary()["metrics"]["rt_ms"]["p50"] == 10

    log.clear()
    assert log.events() == []
    assert TurnLog(path).events() == []


def test_latency_stats_interpolates():
    assert latency_stats([]) == {"count": 0, "p50": 0, "p95": 0}
    assert latency_stats([100, 200]) == {"count": 2, "p50": 150, "p95": 195}
    assert latency_stats([7]) == {"count": 1, "p50": 7, "p95": 7}
