import pytest

from services.tags import DEFAULT_TAG_COLOR, TagService, TagValidationError
from services.task_repository import SqlTaskRepository


@pytest.fixture()
def tags(session_factory):
    return TagService("u1", session_factory)


@pytest.fixture()
def repo(session_factory):
    return SqlTaskRepository(session_factory)


def _task(repo, *names, user_id="u1"):
    return repo.insert({"user_id": user_id, "title": "Task", "tags": list(names)})


def test_create_normalizes_color(tags):
    tag = tags.create("  Work ", "#1e88e5")
    assert tag.id is not None
    assert tag.name == "Work"
    assert tag.color_hex == "#1E88E5"
    assert [t.name for t in tags.list()] == ["Work"]


@pytest.mark.parametrize("name, color", [("", "#FFFFFF"), ("x" * 41, "#FFFFFF"), ("Work", "blue"), ("Work", "#FFF")])
def test_create_rejects_invalid_input(tags, name, color):
    with pytest.raises(TagValidationError):
        tags.create(name, color)


def test_names_are_unique_per_user(tags, session_factory):
    tags.create("Work")
    with pytest.raises(TagValidationError):
        tags.create("Work")
    other = TagService("u2", session_factory).create("Work")
    assert other.user_id == "u2"


def test_tags_named_on_tasks_are_created_with_default_color(tags, repo):
    _task(repo, "errands")
    (tag,) = tags.list()
    assert tag.name == "errands"
    assert tag.color_hex == DEFAULT_TAG_COLOR


def test_rename_shows_on_tasks(tags, repo):
    stored = _task(repo, "wrk")
    tag = tags.get_by_name("wrk")

    renamed = tags.rename(tag.id, "work")

    assert renamed.name == "work"
    assert repo.get(stored["id"])["tags"] == ["work"]


def test_rename_to_existing_name_is_rejected(tags):
    home = tags.create("home")
    tags.create("work")
    with pytest.raises(TagValidationError):
        tags.rename(home.id, "work")
    assert tags.rename(home.id, "home").name == "home"


def test_recolor(tags):
    tag = tags.create("home", "#000000")
    assert tags.recolor(tag.id, "#a1b2c3").color_hex == "#A1B2C3"
    with pytest.raises(TagValidationError):
        tags.recolor(tag.id, "red")


def test_delete_removes_tag_from_tasks(tags, repo):
    stored = _task(repo, "home", "work")
    tag = tags.get_by_name("home")

    tags.delete(tag.id)
    tags.delete(tag.id)

    assert tags.get_by_name("home") is None
    assert repo.get(stored["id"])["tags"] == ["work"]


def test_other_users_tags_are_out_of_reach(tags, repo, session_factory):
    _task(repo, "private", user_id="u2")
    foreign = TagService("u2", session_factory).get_by_name("private")

    assert tags.rename(foreign.id, "mine") is None
    assert tags.recolor(foreign.id, "#FFFFFF") is None
    tags.delete(foreign.id)
    assert TagService("u2", session_factory).get_by_name("private") is not None


def test_usage_counts_tasks(tags, repo):
    _task(repo, "home", "work")
    _task(repo, "home")
    tags.create("unused")
    assert tags.usage() == {"home": 2, "work": 1, "unused": 0}
