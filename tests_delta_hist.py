import subprocess, sys, os, gzip, tempfile
from pathlib import Path

import pytest
import zstandard as zstd

import csvdelta
from csvdelta import (
    ConfigurationError, DeltaHistogram, MergeJoin, ParseError, RangeError, Row, RunConfig,
    SourceIOError, apply_oob, build_histogram, decode_histogram,
)

SCRIPT = str(Path(__file__).with_name("csvdelta.py"))

def _write(dirname, name, text):
    path = os.path.join(dirname, name)
    if name.endswith(".gz"):
        with gzip.open(path, "wt", newline="") as f:
            f.write(text)
    elif name.endswith(".zst"):
        with open(path, "wb") as f:
            f.write(zstd.ZstdCompressor().compress(text.encode("utf-8")))
    else:
        with open(path, "w", newline="") as f:
            f.write(text)
    return path

def _rows(*specs):
    return iter([Row(v, join_key=k) for k, v in specs])

def _run_cli(*args):
    return subprocess.run([sys.executable, SCRIPT, *args], capture_output=True, text=True)

# ---- OOB policy ----

def test_apply_oob_in_range_is_recorded_as_is():
    for rule in csvdelta.OOB_RULES:
        assert apply_oob(rule, 0, 100) == 0
        assert apply_oob(rule, 99, 100) == 99

def test_apply_oob_drop_discards_outside_half_open_range():
    assert apply_oob("drop", -1, 100) is None
    assert apply_oob("drop", 100, 100) is None
    assert apply_oob("drop", 5000, 100) is None

def test_apply_oob_saturate_clamps():
    assert apply_oob("saturate", -5, 100) == 0
    assert apply_oob("saturate", 500, 100) == 100

def test_apply_oob_error_raises():
    with pytest.raises(RangeError):
        apply_oob("error", -1, 100)
    with pytest.raises(RangeError):
        apply_oob("error", 100, 100)

# ---- Histogram ----

def test_histogram_rejects_degenerate_parameters():
    with pytest.raises(RangeError):
        DeltaHistogram(0, 2)
    with pytest.raises(RangeError):
        DeltaHistogram(30000, 0)
    with pytest.raises(RangeError):
        DeltaHistogram(30000, 6)

def test_histogram_record_and_saturating_record():
    h = DeltaHistogram(100, 2)
    h.record(0)
    h.record(100)
    with pytest.raises(RangeError):
        h.record(101)
    with pytest.raises(RangeError):
        h.record(-1)
    h.saturating_record(-5)
    h.saturating_record(500)
    assert h.total_count == 4
    assert h.min_value() == 0
    assert h.max_recorded() == 100

def test_serialize_consumes_histogram():
    h = DeltaHistogram(1000, 3)
    h.record(42)
    text = h.serialize()
    decoded = decode_histogram(text)
    assert decoded.get_total_count() == 1
    assert decoded.get_value_at_percentile(50) == 42
    with pytest.raises(RuntimeError):
        h.serialize()

# ---- Merge join ----

def test_join_matches_every_left_key_and_leaves_nothing_pending():
    join = MergeJoin(_rows(("c", 3), ("a", 1), ("d", 4), ("b", 2)))
    got = {k: join.take(k).primary for k in ("a", "b", "c", "d")}
    assert got == {"a": 1, "b": 2, "c": 3, "d": 4}
    assert len(join) == 0
    assert join.pending_keys() == []
    assert join.peak_pending == 2

def test_join_buffers_out_of_order_right_rows():
    join = MergeJoin(_rows(("B", 60), ("A", 40)))
    assert join.take("A").primary == 40
    assert join.pending_keys() == ["B"]
    assert join.take("B").primary == 60
    assert len(join) == 0

def test_join_unmatched_key_exhausts_right_stream():
    join = MergeJoin(_rows(("a", 1), ("b", 2)))
    assert join.take("zzz") is None
    assert sorted(join.pending_keys()) == ["a", "b"]
    assert join.take("a").primary == 1
    assert join.take("zzz") is None

def test_join_skips_right_rows_without_key():
    join = MergeJoin(_rows((None, 1), ("a", 2)))
    assert join.take("a").primary == 2
    assert len(join) == 0

def test_join_duplicate_keys_last_writer_wins():
    join = MergeJoin(_rows(("a", 1), ("a", 2), ("b", 3)))
    assert join.take("b").primary == 3
    assert len(join) == 1
    assert join.take("a").primary == 2
    assert join.take("a") is None

def test_join_duplicate_keys_queue():
    join = MergeJoin(_rows(("a", 1), ("a", 2), ("b", 3)), duplicate_keys="queue")
    assert join.take("b").primary == 3
    assert len(join) == 2
    assert join.take("a").primary == 1
    assert join.take("a").primary == 2
    assert len(join) == 0

def test_join_duplicate_keys_error():
    join = MergeJoin(_rows(("a", 1), ("a", 2), ("b", 3)), duplicate_keys="error")
    with pytest.raises(ParseError):
        join.take("b")

# ---- Pipeline ----

def test_single_stream_drop_example():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "recv,sent\n120,100\n80,100\n")
        hist, stats = build_histogram(RunConfig(path, "recv", "sent", oob_rule="drop"))
        assert hist.total_count == 1
        assert hist.value_at_percentile(100) == 20
        assert stats.recorded == 1
        assert stats.dropped == 1

def test_single_stream_skips_missing_values():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n10,3\n,3\n4,\n9\n")
        hist, stats = build_histogram(RunConfig(path, "a", "b"))
        assert hist.total_count == 1
        assert stats.missing == 3
        assert stats.lhs_rows == 4

def test_single_stream_saturate_example():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n0,5\n600,100\n")
        hist, stats = build_histogram(RunConfig(path, "a", "b", max_value=100, oob_rule="saturate"))
        assert hist.total_count == 2
        assert hist.min_value() == 0
        assert hist.max_recorded() == 100
        assert stats.clamped == 2

def test_error_rule_negative_delta_aborts():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n10,5\n1,5\n")
        with pytest.raises(RangeError):
            build_histogram(RunConfig(path, "a", "b"))

def test_error_rule_too_large_delta_aborts():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n10,5\n700,5\n")
        with pytest.raises(RangeError):
            build_histogram(RunConfig(path, "a", "b", max_value=100))
        res = _run_cli("--fname", path, "--lhs-column", "a", "--rhs-column", "b", "--max-value", "100")
        assert res.returncode == 1
        assert res.stdout == ""

def test_dual_stream_example_out_of_order():
    with tempfile.TemporaryDirectory() as d:
        lhs = _write(d, "lhs.csv", "join,v\nA,50\nB,70\n")
        rhs = _write(d, "rhs.csv", "join,v\nB,60\nA,40\n")
        cfg = RunConfig(lhs, "v", "v", secondary_source=rhs, join_column="join", oob_rule="saturate")
        hist, stats = build_histogram(cfg)
        assert hist.total_count == 2
        assert hist.min_value() == 10
        assert hist.max_recorded() == 10
        assert stats.pending_left == 0
        assert stats.peak_pending == 1

def test_dual_stream_unmatched_and_keyless_rows_are_skipped():
    with tempfile.TemporaryDirectory() as d:
        lhs = _write(d, "lhs.csv", "id,recv\na,15\n,99\nzz,40\nb,30\n")
        rhs = _write(d, "rhs.csv", "id,sent\nb,10\n,1\na,5\n")
        cfg = RunConfig(lhs, "recv", "sent", secondary_source=rhs, join_column="id")
        hist, stats = build_histogram(cfg)
        assert hist.total_count == 2
        assert hist.min_value() == 10
        assert hist.max_recorded() == 20
        assert stats.unmatched == 1
        assert stats.missing == 1

def test_negative_skip_option():
    with tempfile.TemporaryDirectory() as d:
        lhs = _write(d, "lhs.csv", "id,t\na,5\nb,50\n")
        rhs = _write(d, "rhs.csv", "id,t\na,10\nb,20\n")
        cfg = RunConfig(lhs, "t", "t", secondary_source=rhs, join_column="id", negative="skip")
        hist, stats = build_histogram(cfg)
        assert hist.total_count == 1
        assert stats.negative_skipped == 1
        with pytest.raises(RangeError):
            build_histogram(cfg._replace(negative="oob"))

def test_compressed_sources_are_transparent():
    with tempfile.TemporaryDirectory() as d:
        plain = _write(d, "x.csv", "a,b\n30,10\n")
        outputs = set()
        for name in ("x.csv.gz", "x.csv.zst"):
            path = _write(d, name, "a,b\n30,10\n")
            outputs.add(build_histogram(RunConfig(path, "a", "b"))[0].serialize())
        outputs.add(build_histogram(RunConfig(plain, "a", "b"))[0].serialize())
        assert len(outputs) == 1

def test_identical_runs_serialize_identically():
    with tempfile.TemporaryDirectory() as d:
        lhs = _write(d, "lhs.csv", "id,t\n" + "".join(f"k{i},{i * 7 + 100}\n" for i in range(200)))
        rhs = _write(d, "rhs.csv", "id,t\n" + "".join(f"k{i},100\n" for i in reversed(range(200))))
        cfg = RunConfig(lhs, "t", "t", secondary_source=rhs, join_column="id")
        first = build_histogram(cfg)[0].serialize()
        second = build_histogram(cfg)[0].serialize()
        assert first == second
        assert decode_histogram(first).get_total_count() == 200

def test_polars_engine_matches_python_engine():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n120,100\n80,100\n,4\n7000,1\n")
        cfg = RunConfig(path, "a", "b", oob_rule="drop", max_value=5000)
        py = build_histogram(cfg)[0].serialize()
        pl = build_histogram(cfg._replace(engine="polars"))[0].serialize()
        assert py == pl

def test_polars_engine_folds_grouped_deltas_with_counts():
    with tempfile.TemporaryDirectory() as d:
        body = "".join(f"{100 + i % 3},100\n" for i in range(30)) + ",1\n5,\n900,1\n"
        path = _write(d, "one.csv", "a,b\n" + body)
        cfg = RunConfig(path, "a", "b", max_value=200, oob_rule="saturate")
        hist, stats = build_histogram(cfg._replace(engine="polars"))
        assert stats.lhs_rows == 33
        assert stats.missing == 2
        assert stats.recorded == 31
        assert stats.clamped == 1
        assert hist.total_count == 31
        assert hist.max_recorded() == 200
        assert hist.serialize() == build_histogram(cfg)[0].serialize()

# ---- Errors ----

def test_rhs_file_without_join_column_fails_before_reading():
    cfg = RunConfig("/nonexistent/lhs.csv", "a", "b", secondary_source="/nonexistent/rhs.csv")
    with pytest.raises(ConfigurationError):
        build_histogram(cfg)
    with pytest.raises(ConfigurationError):
        build_histogram(RunConfig("/nonexistent/lhs.csv", "a", "b", join_column="id"))

def test_polars_engine_rejects_dual_mode():
    cfg = RunConfig("l.csv", "a", "b", secondary_source="r.csv", join_column="id", engine="polars")
    with pytest.raises(ConfigurationError):
        build_histogram(cfg)

def test_missing_file_is_io_error():
    with pytest.raises(SourceIOError):
        build_histogram(RunConfig("/nonexistent/data.csv", "a", "b"))

def test_unknown_column_is_parse_error():
    with tempfile.TemporaryDirectory() as d:
        lhs = _write(d, "lhs.csv", "id,t\na,5\n")
        rhs = _write(d, "rhs.csv", "key,t\na,1\n")
        with pytest.raises(ParseError, match="c is not a valid column"):
            build_histogram(RunConfig(lhs, "t", "c"))
        with pytest.raises(ParseError, match="id is not a valid column"):
            build_histogram(RunConfig(lhs, "t", "t", secondary_source=rhs, join_column="id"))

def test_non_integer_value_is_parse_error():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n1,0\n2.5,1\n")
        with pytest.raises(ParseError, match="illegal value"):
            build_histogram(RunConfig(path, "a", "b"))

@pytest.mark.parametrize("cell", ["1_000", " 5", "5 ", "٣", "+", "99999999999999999999"])
def test_loose_integer_spellings_are_parse_errors(cell):
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", f"a,b\n{cell},10\n")
        with pytest.raises(ParseError, match="illegal value"):
            build_histogram(RunConfig(path, "a", "b", oob_rule="saturate"))

def test_signed_integer_cells_are_accepted():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n+15,-5\n-9223372036854775808,-9223372036854775808\n")
        hist, stats = build_histogram(RunConfig(path, "a", "b"))
        assert stats.recorded == 2
        assert hist.max_recorded() == 20
        assert hist.min_value() == 0

def test_empty_file_is_parse_error():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "")
        with pytest.raises(ParseError):
            build_histogram(RunConfig(path, "a", "b"))

# ---- CLI ----

def test_cli_prints_single_base64_line():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "recv,sent\n120,100\n80,100\n")
        res = _run_cli("--fname", path, "--lhs-column", "recv", "--rhs-column", "sent", "--oob", "drop", "--stats")
        assert res.returncode == 0
        lines = res.stdout.splitlines()
        assert len(lines) == 1
        hist = decode_histogram(lines[0])
        assert hist.get_total_count() == 1
        assert hist.get_value_at_percentile(100) == 20
        assert "[stats]" in res.stderr

def test_cli_failure_emits_no_histogram():
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "recv,sent\n120,100\n80,100\n")
        res = _run_cli("--fname", path, "--lhs-column", "recv", "--rhs-column", "sent")
        assert res.returncode != 0
        assert res.stdout == ""
        assert "error:" in res.stderr

def test_cli_configuration_error_exit_code():
    res = _run_cli("--fname", "x.csv", "--lhs-column", "a", "--rhs-column", "b", "--rhs-fname", "y.csv")
    assert res.returncode == 2
    assert res.stdout == ""
    assert "join column" in res.stderr

def test_progress_lines_go_to_stderr(capsys):
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n" + "5,1\n" * 4)
        hist, stats = build_histogram(RunConfig(path, "a", "b"), csvdelta.Progress(every_rows=2))
        err = capsys.readouterr().err
        assert err.count("[progress]") == 2
        assert stats.peak_rss > 0
        assert hist.total_count == 4

# ---- Companion scripts ----

def test_generated_files_join_within_window():
    here = Path(__file__).parent
    with tempfile.TemporaryDirectory() as d:
        prefix = os.path.join(d, "lat")
        subprocess.check_call([sys.executable, str(here / "make_csv.py"), prefix, "500", "16", "0", "7"])
        cfg = RunConfig(prefix + "_lhs.csv", "recv", "sent", secondary_source=prefix + "_rhs.csv",
                        join_column="id", oob_rule="saturate")
        hist, stats = build_histogram(cfg)
        assert hist.total_count == 500
        assert stats.unmatched == 0
        assert stats.pending_left == 0
        assert stats.peak_pending <= 16

def test_summarize_hist_prints_table():
    h = DeltaHistogram(30000, 2)
    for v in (10, 20, 30):
        h.record(v)
    out = subprocess.run([sys.executable, str(Path(__file__).with_name("summarize_hist.py"))],
                         input=h.serialize() + "\n", capture_output=True, text=True, check=True).stdout
    assert "| stdin:1 | 3 | 10 |" in out

def test_cli_reads_stdin_with_byte_order_mark():
    data = "\ufeffrecv,sent\r\n120,100\r\n80,100\r\n".encode("utf-8")
    res = subprocess.run([sys.executable, SCRIPT, "--fname", "-", "--lhs-column", "recv",
                          "--rhs-column", "sent", "--oob", "drop"], input=data, capture_output=True)
    assert res.returncode == 0, res.stderr
    hist = decode_histogram(res.stdout.strip())
    assert hist.get_total_count() == 1
    assert hist.get_value_at_percentile(100) == 20

@pytest.mark.parametrize("sigfigs", ["0", "6"])
def test_cli_sigfigs_out_of_range_is_histogram_parameter_error(sigfigs):
    with tempfile.TemporaryDirectory() as d:
        path = _write(d, "one.csv", "a,b\n5,1\n")
        res = _run_cli("--fname", path, "--lhs-column", "a", "--rhs-column", "b", "--sigfigs", sigfigs)
        assert res.returncode == 1
        assert res.stdout == ""
        assert "histogram parameter error" in res.stderr
