import pytest

from shardraft.annotation import (
    COLOR_FAULT,
    COLOR_INFO,
    COLOR_SUCCESS,
    COLOR_USER,
    TAG_CHECKER,
    TAG_INFO,
    TAG_PARTITION,
    AnnotationLog,
    FaultTracker,
    timestamp,
)


def test_timestamp_increases():
    a = timestamp()
    b = timestamp()
    assert b >= a > 0


def test_point_records_annotation():
    log = AnnotationLog()
    log.point("tag", "desc", "det", COLOR_USER)
    [a] = log.annotations
    assert (a.tag, a.description, a.details, a.background_color, a.end) == (
        "tag", "desc", "det", COLOR_USER, 0
    )


def test_interval_ends_after_start():
    log = AnnotationLog()
    start = timestamp()
    log.interval("tag", start, "d", "x")
    [a] = log.annotations
    assert a.start == start
    assert a.end >= start


def test_continuous_replaced_closes_previous():
    log = AnnotationLog()
    log.continuous("t", "first", "first")
    log.continuous("t", "second", "second")
    closed = log.annotations
    assert [a.description for a in closed] == ["first"]
    final = log.finalize("done")
    assert [a.description for a in final] == ["first", "second", "done"]
    assert final[1].start >= closed[0].end


def test_continuous_end_without_open_is_noop():
    log = AnnotationLog()
    log.continuous_end("missing")
    assert log.annotations == []


def test_continuous_end_closes():
    log = AnnotationLog()
    log.continuous("t", "a", "b")
    log.continuous_end("t")
    final = log.finalize("end")
    assert [a.description for a in final] == ["a", "end"]


def test_finalize_sets_flag_and_end_info():
    log = AnnotationLog()
    assert log.finalized is False
    result = log.finalize("test passed")
    assert log.finalized is True
    assert result[-1].tag == TAG_INFO
    assert result[-1].background_color == COLOR_INFO
    assert result[-1].description == "test passed"


def test_clear_resets_everything():
    log = AnnotationLog()
    log.point("a", "b", "c")
    log.continuous("t", "x", "y")
    log.finalize("e")
    log.clear()
    assert log.finalized is False
    assert [a.tag for a in log.finalize("e")] == [TAG_INFO]


def test_checker_end_without_begin_is_point():
    log = AnnotationLog()
    ft = FaultTracker(3, log)
    ft.checker_end("ok", "details", COLOR_SUCCESS)
    [a] = log.annotations
    assert a.tag == TAG_CHECKER
    assert a.end == 0
    assert a.details == "details"


def test_checker_begin_then_end_is_interval():
    log = AnnotationLog()
    ft = FaultTracker(3, log)
    ft.checker_begin("checking")
    ft.checker_end("ok", "fine", COLOR_SUCCESS)
    [a] = log.annotations
    assert a.details == "checking: fine"
    assert a.end >= a.start > 0


def test_connection_disconnect_text():
    log = AnnotationLog()
    ft = FaultTracker(3, log)
    ft.connection([True, False, True])
    final = log.finalize("e")
    fault = [a for a in final if a.tag == TAG_PARTITION]
    assert len(fault) == 1
    assert fault[0].description == "partition = [1] [0 2]"
    assert fault[0].background_color == COLOR_FAULT


def test_connection_unchanged_does_nothing():
    log = AnnotationLog()
    ft = FaultTracker(2, log)
    ft.connection([True, True])
    assert len(log.finalize("e")) == 1


def test_shutdown_and_restart():
    log = AnnotationLog()
    ft = FaultTracker(3, log)
    ft.shutdown([2])
    assert ft.crashed == [False, False, True]
    ft.shutdown([2])
    ft.restart([2])
    assert ft.crashed == [False, False, False]
    final = log.finalize("e")
    fault = [a for a in final if a.tag == TAG_PARTITION]
    assert [a.description for a in fault] == ["partition = [0 1] / crash = [2]"]


def test_two_partitions_text():
    log = AnnotationLog()
    ft = FaultTracker(3, log)
    ft.two_partitions([0, 1], [2])
    final = log.finalize("e")
    assert final[0].description == "partition = [0 1] [2]"


def test_clear_failure_restores_state():
    log = AnnotationLog()
    ft = FaultTracker(3, log)
    ft.connection([False, True, True])
    ft.shutdown([1])
    ft.clear_failure()
    assert ft.connected == [True, True, True]
    assert ft.crashed == [False, False, False]
    assert log.annotations[-1].tag == TAG_PARTITION
    assert log.annotations[-1].end > 0


def test_shutdown_out_of_range():
    ft = FaultTracker(2, AnnotationLog())
    with pytest.raises(IndexError):
        ft.shutdown([5])


def test_connection_wrong_length():
    ft = FaultTracker(2, AnnotationLog())
    with pytest.raises(ValueError):
        ft.connection([True])