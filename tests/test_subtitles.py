from chapter_studio.models import ScriptLine
from chapter_studio.subtitles import build_cues, clean_text, format_timestamp, render_srt, wrap_words


def test_wrap_words_respects_line_length():
    text = "The lighthouse keeper climbed the stairs for the very last time that night"
    lines = wrap_words(text, 42)
    assert all(len(line) <= 42 for line in lines)
    assert " ".join(lines) == text


def test_wrap_words_splits_overlong_words():
    assert wrap_words("a" * 50, 20) == ["a" * 20, "a" * 20, "a" * 10]


def test_format_timestamp():
    assert format_timestamp(0) == "00:00:00,000"
    assert format_timestamp(3661.5) == "01:01:01,500"


def test_clean_text_repairs_mojibake():
    assert clean_text("Itâ€™s  here\x07") == "It's here"


def test_cues_skip_sfx_and_accumulate_time():
    lines = [
        ScriptLine(speaker="Narrator", text="Hello world"),
        ScriptLine(speaker="SFX", text="door creak"),
        ScriptLine(speaker="Narrator", text="x " * 60),
    ]

    cues = build_cues(lines, chars_per_second=15, max_line_length=42, max_lines=2)

    assert cues[0].text == "Hello world"
    assert cues[0].start == 0.0
    # Short lines are held for the minimum duration.
    assert cues[0].end == 1.0
    assert cues[1].start == cues[0].end
    assert all(len(cue.text.split("\n")) <= 2 for cue in cues)
    assert [cue.index for cue in cues] == list(range(1, len(cues) + 1))


def test_render_srt():
    cues = build_cues([ScriptLine(speaker="A", text="Short line.")], chars_per_second=15)
    srt = render_srt(cues)
    assert srt == "1\n00:00:00,000 --> 00:00:01,000\nShort line.\n"
