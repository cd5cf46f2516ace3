import datetime as _dt
import logging

import pytest

import tablitz

NOW = 1_710_000_000_000

PIPE_EXPORT = (
    "https://a.com | A\n"
    "https://b.com | B\n"
    "\n"
    "https://c.com | C\n"
)

MARKDOWN_EXPORT = (
    "---\n"
    "## 2 tabs\n"
    "> Created 1/2/2024, 3:04:05 PM\n"
    "> reading list\n"
    "\n"
    "[Example A](https://a.com)\n"
    "[Example B](https://b.com/path?q=1)\n"
    "---\n"
    "## 1 tab\n"
    "\n"
    "[Untitled group tab](https://c.com)\n"
)


def test_pipe_export_groups_and_derived_ids() -> None:
    content = PIPE_EXPORT.encode("utf-8")
    result = tablitz.parse_export(content, now=NOW)

    h = tablitz.fnv1a_32(content)
    groups = result.session.groups
    assert result.format == "pipe"
    assert [g.id for g in groups] == [f"{h:08x}-g0", f"{h:08x}-g1"]
    assert [t.id for t in groups[0].tabs] == [f"{h:08x}-g0-t0", f"{h:08x}-g0-t1"]
    assert [(t.url, t.title) for t in groups[0].tabs] == [("https://a.com", "A"), ("https://b.com", "B")]
    assert [(t.url, t.title) for t in groups[1].tabs] == [("https://c.com", "C")]
    assert all(g.created_at == NOW for g in groups)
    assert all(t.added_at == NOW for g in groups for t in g.tabs)
    assert result.diagnostics == []


def test_pipe_empty_title_and_multiple_blank_lines() -> None:
    content = b"https://a.com | \n\n\n\nhttps://b.com |\n"
    result = tablitz.parse_export(content, now=NOW)

    assert [[t.title for t in g.tabs] for g in result.session.groups] == [[""], [""]]


def test_reparse_is_stable_and_edit_changes_ids() -> None:
    content = PIPE_EXPORT.encode("utf-8")
    first = tablitz.parse_export(content, now=NOW)
    second = tablitz.parse_export(content, now=NOW + 5000)
    edited = tablitz.parse_export(content.replace(b"| C", b"| C!"), now=NOW)

    assert [g.id for g in first.session.groups] == [g.id for g in second.session.groups]
    assert [t.id for t in first.session.groups[0].tabs] == [t.id for t in second.session.groups[0].tabs]
    assert not {g.id for g in first.session.groups} & {g.id for g in edited.session.groups}


def test_markdown_export_labels_and_timestamp() -> None:
    result = tablitz.parse_export(MARKDOWN_EXPORT.encode("utf-8"), now=NOW)

    groups = result.session.groups
    assert result.format == "markdown"
    assert len(groups) == 2

    expected = int(_dt.datetime(2024, 1, 2, 15, 4, 5).timestamp()) * 1000
    assert groups[0].created_at == expected
    assert groups[0].label == "reading list"
    assert [(t.title, t.url) for t in groups[0].tabs] == [
        ("Example A", "https://a.com"),
        ("Example B", "https://b.com/path?q=1"),
    ]
    assert all(t.added_at == expected for t in groups[0].tabs)

    assert groups[1].label is None
    assert groups[1].created_at == NOW
    assert [t.url for t in groups[1].tabs] == ["https://c.com"]


def test_markdown_keeps_raw_timestamp_fields() -> None:
    result = tablitz.parse_export(MARKDOWN_EXPORT.encode("utf-8"), now=NOW)

    first_id = result.session.groups[0].id
    assert result.timestamp_fields == {first_id: tablitz.CreatedStamp(1, 2, 2024, 3, 4, 5, "PM")}


def test_markdown_twelve_am_and_pm() -> None:
    midnight = tablitz.CreatedStamp(3, 4, 2024, 12, 0, 1, "AM").to_datetime()
    noon = tablitz.CreatedStamp(3, 4, 2024, 12, 0, 1, "PM").to_datetime()
    assert (midnight.hour, noon.hour) == (0, 12)


def test_markdown_title_containing_brackets() -> None:
    content = (
        "---\n"
        "## 1 tabs\n"
        "\n"
        "[a [b] c](https://en.wikipedia.org/wiki/Foo_(bar))\n"
    ).encode("utf-8")
    tab = tablitz.parse_export(content, now=NOW).session.groups[0].tabs[0]

    assert tab.title == "a [b] c"
    assert tab.url == "https://en.wikipedia.org/wiki/Foo_(bar)"


def test_malformed_pipe_line_is_reported_with_line_number() -> None:
    content = b"https://a.com | A\nthis line has no pipe\nhttps://b.com | B\n"
    result = tablitz.parse_export(content, now=NOW, logger=logging.getLogger("test"))

    assert [t.url for t in result.session.groups[0].tabs] == ["https://a.com", "https://b.com"]
    assert len(result.diagnostics) == 1
    diag = result.diagnostics[0]
    assert diag.kind == tablitz.MALFORMED_LINE
    assert diag.context["line"] == 2


def test_markdown_bad_tab_line_and_bad_timestamp() -> None:
    content = (
        "---\n"
        "## 2 tabs\n"
        "> Created 13/40/2024, 3:04:05 PM\n"
        "\n"
        "[ok](https://ok.com)\n"
        "not a tab line\n"
    ).encode("utf-8")
    result = tablitz.parse_export(content, now=NOW)

    group = result.session.groups[0]
    assert group.created_at == NOW
    assert [t.url for t in group.tabs] == ["https://ok.com"]
    assert [d.context["line"] for d in result.diagnostics] == [3, 6]
    assert result.timestamp_fields == {}


def test_bom_is_stripped() -> None:
    content = b"\xef\xbb\xbf" + PIPE_EXPORT.encode("utf-8")
    result = tablitz.parse_export(content, now=NOW)

    assert result.session.groups[0].tabs[0].url == "https://a.com"


def test_unrecognized_content_raises() -> None:
    with pytest.raises(tablitz.UnrecognizedFormat):
        tablitz.parse_export(b"just some notes\nnothing to see here\n", now=NOW)


def test_detect_format() -> None:
    assert tablitz.detect_format(MARKDOWN_EXPORT) is tablitz.ExportFormat.MARKDOWN
    assert tablitz.detect_format(PIPE_EXPORT) is tablitz.ExportFormat.PIPE
    # A '---' line alone does not make a file markdown.
    assert tablitz.detect_format("---\nhttps://a.com | A\n") is tablitz.ExportFormat.PIPE


def test_parse_export_file_records_source(tmp_path) -> None:
    path = tmp_path / "onetab.txt"
    path.write_bytes(PIPE_EXPORT.encode("utf-8"))

    result = tablitz.parse_export_file(path, now=NOW)

    assert result.session.source == tablitz.ExportFileSource(str(path))
    assert result.session.imported_at == NOW
    assert result.session.created_at == NOW


def test_fnv1a_reference_vectors() -> None:
    assert tablitz.fnv1a_32(b"") == 0x811C9DC5
    assert tablitz.fnv1a_32(b"a") == 0xE40C292C
    assert tablitz.fnv1a_32(b"foobar") == 0xBF9CF968


def test_derived_ids_keep_native_ids() -> None:
    groups = [
        tablitz.TabGroup(id="native", created_at=1, tabs=[tablitz.Tab(id="", url="https://a.com")]),
        tablitz.TabGroup(id="", created_at=1, tabs=[tablitz.Tab(id="keep", url="https://b.com")]),
    ]
    h = tablitz.assign_derived_ids(groups, b"xyz")

    assert groups[0].id == "native"
    assert groups[0].tabs[0].id == "native-t0"
    assert groups[1].id == tablitz.derive_group_id(h, 1) == f"{h:08x}-g1"
    assert groups[1].tabs[0].id == "keep"


def test_markdown_timestamp_with_narrow_no_break_space() -> None:
    content = (
        "---\n"
        "## 1 tabs\n"
        "> Created 1/2/2024,\u202f3:04:05\u202fPM\n"
        "> My label\n"
        "\n"
        "[X](https://x.com)\n"
    ).encode("utf-8")
    result = tablitz.parse_export(content, now=5)

    group = result.session.groups[0]
    assert group.created_at == int(_dt.datetime(2024, 1, 2, 15, 4, 5).timestamp()) * 1000
    assert group.label == "My label"
    assert group.tabs[0].added_at == group.created_at
    assert result.diagnostics == []
