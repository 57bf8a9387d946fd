from adclone.pipeline.timeline import clamp_duration, format_timecode, parse_competitor_timeline, parse_timecode


def test_parse_timecode_formats():
    assert parse_timecode("7") == 7
    assert parse_timecode("01:05") == 65
    assert parse_timecode("01:00:02") == 3602
    assert parse_timecode("") is None
    assert parse_timecode("aa:10") is None
    assert parse_timecode("-3") is None


def test_format_timecode():
    assert format_timecode(0) == "00:00"
    assert format_timecode(65.4) == "01:05"
    assert format_timecode(-1) == "00:00"


def test_clamp_duration():
    assert clamp_duration(None) == 8
    assert clamp_duration(0, 6) == 6
    assert clamp_duration(2.5) == 3
    assert clamp_duration(0.2) == 1


def test_shots_without_start_continue_from_previous_end():
    analysis = {
        "shots": [
            {"shot_id": 1, "start_time": "00:00", "end_time": "00:03", "subject": "Runner"},
            {"shot_id": 2, "duration_seconds": 4, "contains_product": True},
            {"shot_id": 3},
        ]
    }

    timeline = parse_competitor_timeline(analysis)

    assert [s.start_time_seconds for s in timeline.shots] == [0, 3, 7]
    assert [s.duration_seconds for s in timeline.shots] == [3, 4, 8]
    assert timeline.shots[1].contains_product is True
    assert timeline.shots[0].subject == "Runner"
    assert timeline.video_duration_seconds == 15


def test_timeline_prefers_detected_duration():
    timeline = parse_competitor_timeline({"video_duration_seconds": 30, "shots": []}, 12)
    assert timeline.shots == []
    assert timeline.video_duration_seconds == 30


def test_timeline_ignores_garbage():
    timeline = parse_competitor_timeline({"shots": ["nope", None]}, 10)
    assert timeline.shots == []
    assert timeline.video_duration_seconds == 10
