"""Tests for layout-aware reads and writes of user data."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import legacy_quiz
from quizforge.store import DocumentStoreError
from quizforge.user_data import (
    Quiz,
    SchemaLayout,
    UserDataReader,
    UserDataWriter,
    UserProfile,
    default_achievements,
    default_progress,
    legacy_data_path,
    normalize_user_id,
    profile_path,
    quiz_path,
)


async def _flag_migrated(store, user_id: str) -> None:
    await store.set(profile_path(user_id), {"migrated": True, "migrationComplete": True})


def test_normalize_user_id() -> None:
    assert normalize_user_id("  u1 ") == "u1"
    with pytest.raises(ValueError):
        normalize_user_id("")
    with pytest.raises(ValueError):
        normalize_user_id("a/b")


async def test_missing_user_reads_defaults(store) -> None:
    reader = UserDataReader(store)
    assert await reader.is_migrated("nobody") is False
    assert await reader.resolve_layout("nobody") is SchemaLayout.LEGACY

    aggregate = await reader.read_aggregate("nobody")
    assert aggregate.quizzes == []
    assert aggregate.progress.to_document() == {}
    assert aggregate.progress.model_dump(by_alias=True) == default_progress()
    assert await reader.read_quiz("nobody", "q1") is None


async def test_profile_without_flag_is_legacy(store) -> None:
    await store.set(profile_path("u1"), {"name": "Ada", "migrated": "yes"})
    assert await UserDataReader(store).is_migrated("u1") is False


async def test_legacy_read_fills_missing_parts(store) -> None:
    await store.set(legacy_data_path("u1"), {"quizzes": [legacy_quiz("q1")]})
    reader = UserDataReader(store)

    aggregate = await reader.read_aggregate("u1")
    assert [quiz.id for quiz in aggregate.quizzes] == ["q1"]
    assert aggregate.classes == []
    assert aggregate.achievements.model_dump(by_alias=True) == default_achievements()

    quiz = await reader.read_quiz("u1", "q1")
    assert quiz is not None and quiz.questions[0].options[0].is_correct is True


async def test_legacy_save_quiz_creates_record_and_prepends(store) -> None:
    writer = UserDataWriter(store)
    await writer.save_quiz("u1", Quiz.model_validate(legacy_quiz("q1")))

    record = await store.get(legacy_data_path("u1"))
    assert [entry["id"] for entry in record["quizzes"]] == ["q1"]
    assert record["progress"] == default_progress()
    assert record["achievements"] == default_achievements()

    await writer.save_quiz("u1", Quiz.model_validate(legacy_quiz("q2")))
    await writer.save_quiz("u1", Quiz.model_validate(legacy_quiz("q1", title="Renamed")))
    record = await store.get(legacy_data_path("u1"))
    assert [entry["id"] for entry in record["quizzes"]] == ["q2", "q1"]
    assert record["quizzes"][1]["title"] == "Renamed"
    assert await store.get(profile_path("u1")) is None


async def test_legacy_updates_are_noops_without_record(store) -> None:
    writer = UserDataWriter(store)
    await writer.delete_quiz("u1", "q1")
    await writer.update_progress("u1", {"totalQuizzesTaken": 3})
    await writer.update_achievements("u1", {"firstQuiz": True})
    assert await store.get(legacy_data_path("u1")) is None


async def test_legacy_partial_updates_merge(store) -> None:
    await store.set(
        legacy_data_path("u1"),
        {"quizzes": [legacy_quiz("q1"), legacy_quiz("q2")], "progress": {"totalQuizzesTaken": 5, "streakCurrent": 2}},
    )
    writer = UserDataWriter(store)
    await writer.update_progress("u1", {"totalQuizzesTaken": 6})
    await writer.update_achievements("u1", {"firstQuiz": True})
    await writer.delete_quiz("u1", "q1")

    record = await store.get(legacy_data_path("u1"))
    assert record["progress"] == {"totalQuizzesTaken": 6, "streakCurrent": 2}
    assert record["achievements"]["firstQuiz"] is True
    assert record["achievements"]["onFire"] is False
    assert [entry["id"] for entry in record["quizzes"]] == ["q2"]


async def test_normalized_writes_touch_single_documents(store) -> None:
    await _flag_migrated(store, "u1")
    await store.set(legacy_data_path("u1"), {"quizzes": [legacy_quiz("old")]})
    writer = UserDataWriter(store)
    reader = UserDataReader(store)

    await writer.save_quiz("u1", Quiz.model_validate(legacy_quiz("q1", created_at="2024-02-01")))
    await writer.save_quiz("u1", Quiz.model_validate(legacy_quiz("q2", created_at="2024-03-01")))
    await writer.update_progress("u1", {"totalQuizzesTaken": 2})
    await writer.update_achievements("u1", {"firstQuiz": True})
    await writer.delete_quiz("u1", "q1")

    assert await store.get(legacy_data_path("u1")) == {"quizzes": [legacy_quiz("old")]}
    progress = await store.get("users/u1/progress/summary")
    assert progress["totalQuizzesTaken"] == 2
    assert "updatedAt" in progress

    aggregate = await reader.read_aggregate("u1")
    assert [quiz.id for quiz in aggregate.quizzes] == ["q2"]
    assert aggregate.progress.total_quizzes_taken == 2
    assert aggregate.achievements.first_quiz is True
    assert await reader.read_quiz("u1", "old") is None


async def test_quiz_pages_follow_created_at(store) -> None:
    await _flag_migrated(store, "u1")
    writer = UserDataWriter(store)
    for day in range(1, 6):
        await writer.save_quiz("u1", Quiz.model_validate(legacy_quiz(f"q{day}", created_at=f"2024-01-0{day}")))

    reader = UserDataReader(store)
    first = await reader.list_quizzes_page("u1", page_size=2)
    assert [quiz.id for quiz in first.quizzes] == ["q5", "q4"]
    assert first.has_more is True

    second = await reader.list_quizzes_page("u1", page_size=2, cursor=first.cursor)
    third = await reader.list_quizzes_page("u1", page_size=2, cursor=second.cursor)
    assert [quiz.id for quiz in second.quizzes] == ["q3", "q2"]
    assert [quiz.id for quiz in third.quizzes] == ["q1"]
    assert third.has_more is False


async def test_legacy_quiz_page_returns_everything(store) -> None:
    await store.set(legacy_data_path("u1"), {"quizzes": [legacy_quiz("q1"), legacy_quiz("q2")]})
    page = await UserDataReader(store).list_quizzes_page("u1", page_size=1)
    assert [quiz.id for quiz in page.quizzes] == ["q1", "q2"]
    assert page.has_more is False and page.cursor is None


async def test_count_quizzes_since(store) -> None:
    await store.set(
        legacy_data_path("u1"),
        {"quizzes": [legacy_quiz("q1", created_at="2024-05-02T10:00:00+00:00"), legacy_quiz("q2")]},
    )
    since = datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert await UserDataReader(store).count_quizzes_since("u1", since) == 1


async def test_register_user_starts_normalized(store) -> None:
    writer = UserDataWriter(store)
    profile = await writer.register_user("fresh", UserProfile(name="Grace", email="g@example.com", migrated=False))

    assert profile.migrated is True
    assert profile.migration_complete is True
    assert profile.name == "Grace"
    assert await UserDataReader(store).is_migrated("fresh") is True

    await writer.save_quiz("fresh", Quiz.model_validate(legacy_quiz("q1")))
    assert await store.get(legacy_data_path("fresh")) is None
    assert await store.get("users/fresh/quizzes/q1") is not None


async def test_register_user_with_legacy_data_stays_legacy(store) -> None:
    await store.set(legacy_data_path("u1"), {"quizzes": [legacy_quiz("q1")]})
    profile = await UserDataWriter(store).register_user("u1", UserProfile(name="Ada"))
    assert profile.migrated is None
    assert await UserDataReader(store).is_migrated("u1") is False


async def test_account_falls_back_to_legacy_account(store) -> None:
    await store.set("userData/quizforge-account-u1", {"name": "Ada", "plan": "pro"})
    reader = UserDataReader(store)
    account = await reader.get_account("u1")
    assert account is not None and account.plan == "pro"

    await store.set(profile_path("u1"), {"name": "Ada L.", "plan": "team"})
    account = await reader.get_account("u1")
    assert account is not None and account.plan == "team"


async def test_save_all_by_layout(store) -> None:
    writer = UserDataWriter(store)
    await writer.save_all("u1", {"progress": {"totalQuizzesTaken": 1}})
    assert (await store.get(legacy_data_path("u1")))["progress"] == {"totalQuizzesTaken": 1}

    await _flag_migrated(store, "u2")
    await writer.save_all("u2", {"progress": {"totalQuizzesTaken": 4}, "achievements": {"quizMaster": True}})
    assert (await store.get("users/u2/progress/summary"))["totalQuizzesTaken"] == 4
    assert (await store.get("users/u2/achievements/main")) == {"quizMaster": True}


async def test_browser_written_records_read_in_both_layouts(store) -> None:
    record = {
        "quizzes": [legacy_quiz("q1", created_at=1714644000000), legacy_quiz("q2")],
        "classes": [
            {
                "id": "class_1",
                "name": "Period 3",
                "createdAt": 1714644000000,
                "students": [{"id": "s_1", "name": "Ada", "joinedAt": 1714644000000}],
            }
        ],
    }
    await store.set(legacy_data_path("u1"), record)
    reader = UserDataReader(store)
    since = datetime(2024, 5, 1, tzinfo=timezone.utc)

    aggregate = await reader.read_aggregate("u1")
    assert aggregate.quizzes[0].created_at == 1714644000000
    assert aggregate.classes[0].students[0]["name"] == "Ada"
    assert (await reader.read_quiz("u1", "q1")).created_at == 1714644000000
    assert await reader.count_quizzes_since("u1", since) == 1

    await _flag_migrated(store, "u1")
    for quiz in record["quizzes"]:
        await store.set(quiz_path("u1", quiz["id"]), quiz)
    await store.set("users/u1/classes/class_1", record["classes"][0])

    assert {quiz.id for quiz in await reader.list_quizzes("u1")} == {"q1", "q2"}
    assert (await reader.list_classes("u1"))[0].created_at == 1714644000000
    assert await reader.count_quizzes_since("u1", since) == 1


async def test_normalized_save_quiz_stamps_write_time(store) -> None:
    await _flag_migrated(store, "u1")
    await UserDataWriter(store).save_quiz("u1", Quiz.model_validate(legacy_quiz("q1")))

    stored = await store.get(quiz_path("u1", "q1"))
    assert datetime.fromisoformat(stored["updatedAt"]).tzinfo is not None
    assert stored["createdAt"] == "2024-01-01T00:00:00+00:00"


async def test_register_user_reports_missing_profile(store, monkeypatch) -> None:
    writer = UserDataWriter(store)

    async def _lost_profile(user_id: str) -> None:
        return None

    monkeypatch.setattr(writer._reader, "read_profile", _lost_profile)
    with pytest.raises(DocumentStoreError):
        await writer.register_user("fresh")
