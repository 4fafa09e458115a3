import pytest

from devloop.ideas import (
    MAX_IDEA_LENGTH,
    Idea,
    IdeaQueue,
    format_ideas_for_selection,
    idea_summary,
    parse_idea_selection,
)


def _queue(paths):
    return IdeaQueue(paths.ideas_dir, paths.ideas_history_dir)


def test_list_sorted_skips_empty_and_non_markdown(paths):
    (paths.ideas_dir / "b.md").write_text("# Second\nbody")
    (paths.ideas_dir / "a.md").write_text("# First\nbody")
    (paths.ideas_dir / "empty.md").write_text("   \n")
    (paths.ideas_dir / "notes.txt").write_text("ignored")

    ideas = _queue(paths).list()
    assert [idea.filename for idea in ideas] == ["a.md", "b.md"]
    assert ideas[0].content == "# First\nbody"


def test_list_truncates_long_ideas(paths):
    (paths.ideas_dir / "big.md").write_text("x" * (MAX_IDEA_LENGTH + 500))
    (idea,) = _queue(paths).list()
    assert len(idea.content) == MAX_IDEA_LENGTH


def test_missing_directory_is_empty(tmp_path):
    queue = IdeaQueue(tmp_path / "nope")
    assert queue.list() == []
    assert queue.count() == 0


def test_load_returns_none_for_missing_or_empty(paths):
    queue = _queue(paths)
    path = paths.ideas_dir / "idea.md"
    assert queue.load(path) is None
    path.write_text("")
    assert queue.load(path) is None
    path.write_text("do it")
    assert queue.load(path) == Idea(path=path, filename="idea.md", content="do it")


def test_archive_moves_into_history(paths):
    queue = _queue(paths)
    path = paths.ideas_dir / "idea.md"
    path.write_text("content")

    assert queue.archive(path)
    assert not path.exists()
    archived = list(paths.ideas_history_dir.iterdir())
    assert len(archived) == 1
    assert archived[0].name.endswith("_idea.md")
    assert archived[0].read_text() == "content"
    assert queue.count() == 0
    assert not queue.archive(path)


def test_cleanup_empty(paths):
    (paths.ideas_dir / "keep.md").write_text("real")
    (paths.ideas_dir / "blank.md").write_text("\n\n")
    assert _queue(paths).cleanup_empty() == 1
    assert [p.name for p in paths.ideas_dir.glob("*.md")] == ["keep.md"]


def test_add_writes_slugged_file(paths):
    queue = _queue(paths)
    first = queue.add("# Add Dark Mode!\nPlease.")
    second = queue.add("# Add Dark Mode!\nPlease.")
    assert first != second
    assert first.name.endswith("_add-dark-mode.md")
    assert first.read_text() == "# Add Dark Mode!\nPlease.\n"
    assert queue.count() == 2


def test_add_rejects_empty_text(paths):
    with pytest.raises(ValueError):
        _queue(paths).add("   ")


def test_idea_summary():
    assert idea_summary("## Title here\nbody") == "Title here"
    assert idea_summary("\n\nplain first line\nsecond") == "plain first line"
    assert idea_summary("y" * 150) == "y" * 100 + "..."


def test_format_ideas_for_selection(tmp_path):
    ideas = [
        Idea(path=tmp_path / "a.md", filename="a.md", content="# A\nalpha"),
        Idea(path=tmp_path / "b.md", filename="b.md", content="beta"),
    ]
    text = format_ideas_for_selection(ideas)
    assert text.startswith("## Idea 1: a.md\n\nSummary: A\n\nFull content:\n```\n# A\nalpha\n```\n")
    assert "\n## Idea 2: b.md\n\nSummary: beta\n" in text


def test_parse_idea_selection():
    assert parse_idea_selection("Thinking...\nSELECTED_IDEA: 2\nReason: x") == 1
    assert parse_idea_selection("selected_idea:1") == 0
    assert parse_idea_selection("SELECTED_IDEA: 0") is None
    assert parse_idea_selection("no choice") is None
