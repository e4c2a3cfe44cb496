"""User data models and the dual-layout read/write layer.

A user's data lives in one of two layouts:

* legacy: a single ``userData/quizforge-data-{uid}`` document holding every
  quiz, class, the progress summary and the achievements summary;
* normalized: ``users/{uid}/...`` sub-documents, one per quiz and class plus
  one each for the profile, progress and achievements.

``profile.migrated`` decides which layout is authoritative. Every public
reader/writer call resolves the layout once and dispatches on it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .store import SERVER_TIMESTAMP, DocumentStore, DocumentStoreError

logger = logging.getLogger(__name__)

LEGACY_COLLECTION = "userData"
ARCHIVE_COLLECTION = "userData-archive"
DEFAULT_PAGE_SIZE = 20

# Browser clients store `Date.now()` milliseconds, the server ISO strings.
Timestamp = Union[int, float, str]


class _Document(BaseModel):
    """Stored documents use camelCase keys and may carry fields we do not model."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class QuizOption(_Document):
    text: str = ""
    is_correct: bool = Field(False, alias="isCorrect")


class QuizQuestion(_Document):
    question: str = ""
    options: List[QuizOption] = Field(default_factory=list)
    explanation: str = ""
    topic: Optional[str] = None
    difficulty: Optional[str] = None


class Quiz(_Document):
    id: str = Field(..., min_length=1)
    title: str = ""
    subject: str = ""
    questions: List[QuizQuestion] = Field(default_factory=list)
    created_at: Timestamp = Field("", alias="createdAt")
    tags: Optional[List[str]] = None
    published: Optional[bool] = None
    share_id: Optional[str] = Field(None, alias="shareId")


class UserClass(_Document):
    id: str = Field(..., min_length=1)
    name: str = ""
    code: str = ""
    teacher_id: str = Field("", alias="teacherId")
    students: List[Any] = Field(default_factory=list)
    created_at: Timestamp = Field("", alias="createdAt")


class UserProgress(_Document):
    total_quizzes_taken: int = Field(0, alias="totalQuizzesTaken")
    total_questions_answered: int = Field(0, alias="totalQuestionsAnswered")
    correct_answers: int = Field(0, alias="correctAnswers")
    average_score: float = Field(0, alias="averageScore")
    streak_current: int = Field(0, alias="streakCurrent")
    streak_longest: int = Field(0, alias="streakLongest")
    last_active_date: str = Field("", alias="lastActiveDate")
    topic_performance: Dict[str, Dict[str, Any]] = Field(default_factory=dict, alias="topicPerformance")
    question_history: Dict[str, Dict[str, Any]] = Field(default_factory=dict, alias="questionHistory")
    daily_history: List[Dict[str, Any]] = Field(default_factory=list, alias="dailyHistory")
    score_history: List[float] = Field(default_factory=list, alias="scoreHistory")


class UserAchievements(_Document):
    first_quiz: bool = Field(False, alias="firstQuiz")
    on_fire: bool = Field(False, alias="onFire")
    week_warrior: bool = Field(False, alias="weekWarrior")
    dedicated_learner: bool = Field(False, alias="dedicatedLearner")
    quiz_master: bool = Field(False, alias="quizMaster")
    perfect_score: bool = Field(False, alias="perfectScore")
    star_student: bool = Field(False, alias="starStudent")


class UserProfile(_Document):
    name: str = ""
    email: str = ""
    role: Optional[str] = None
    created_at: Optional[Timestamp] = Field(None, alias="createdAt")
    plan: Optional[str] = None
    stripe_customer_id: Optional[str] = Field(None, alias="stripeCustomerId")
    organizations: List[Dict[str, Any]] = Field(default_factory=list)
    migrated: Optional[bool] = None
    migrated_at: Optional[str] = Field(None, alias="migratedAt")
    migration_complete: Optional[bool] = Field(None, alias="migrationComplete")
    rolled_back_at: Optional[str] = Field(None, alias="rolledBackAt")


class UserAggregate(_Document):
    quizzes: List[Quiz] = Field(default_factory=list)
    classes: List[UserClass] = Field(default_factory=list)
    progress: UserProgress = Field(default_factory=UserProgress)
    achievements: UserAchievements = Field(default_factory=UserAchievements)


class QuizPage(BaseModel):
    quizzes: List[Quiz]
    cursor: Optional[str] = None
    has_more: bool = False


class SchemaLayout(str, Enum):
    LEGACY = "legacy"
    NORMALIZED = "normalized"


def default_progress() -> Dict[str, Any]:
    return UserProgress().model_dump(mode="json", by_alias=True)


def default_achievements() -> Dict[str, Any]:
    return UserAchievements().model_dump(mode="json", by_alias=True)


# ----------------------------------------------------------------------
# Document paths
# ----------------------------------------------------------------------


def normalize_user_id(user_id: str) -> str:
    normalized = user_id.strip() if isinstance(user_id, str) else ""
    if not normalized:
        raise ValueError("User id cannot be empty.")
    if "/" in normalized:
        raise ValueError(f"User id '{user_id}' cannot contain '/'.")
    return normalized


def legacy_data_path(user_id: str) -> str:
    return f"{LEGACY_COLLECTION}/quizforge-data-{user_id}"


def legacy_account_path(user_id: str) -> str:
    return f"{LEGACY_COLLECTION}/quizforge-account-{user_id}"


def archive_path(user_id: str) -> str:
    return f"{ARCHIVE_COLLECTION}/quizforge-data-{user_id}"


def profile_path(user_id: str) -> str:
    return f"users/{user_id}/profile/main"


def progress_path(user_id: str) -> str:
    return f"users/{user_id}/progress/summary"


def achievements_path(user_id: str) -> str:
    return f"users/{user_id}/achievements/main"


def quizzes_collection(user_id: str) -> str:
    return f"users/{user_id}/quizzes"


def quiz_path(user_id: str, quiz_id: str) -> str:
    return f"{quizzes_collection(user_id)}/{quiz_id}"


def classes_collection(user_id: str) -> str:
    return f"users/{user_id}/classes"


def class_path(user_id: str, class_id: str) -> str:
    return f"{classes_collection(user_id)}/{class_id}"


def created_at_millis(value: Any) -> Optional[float]:
    """Epoch milliseconds for a stored ``createdAt``; ``None`` when unreadable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp() * 1000


def _as_fields(partial: Union[Mapping[str, Any], _Document]) -> Dict[str, Any]:
    if isinstance(partial, _Document):
        return partial.to_document()
    return dict(partial)


# ----------------------------------------------------------------------
# Reader
# ----------------------------------------------------------------------


class UserDataReader:
    """Reads user data through whichever layout is authoritative."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def read_profile(self, user_id: str) -> Optional[UserProfile]:
        payload = await self._store.get(profile_path(normalize_user_id(user_id)))
        return UserProfile.model_validate(payload) if payload is not None else None

    async def is_migrated(self, user_id: str) -> bool:
        return await self.resolve_layout(user_id) is SchemaLayout.NORMALIZED

    async def resolve_layout(self, user_id: str) -> SchemaLayout:
        payload = await self._store.get(profile_path(normalize_user_id(user_id)))
        if payload is not None and payload.get("migrated") is True:
            return SchemaLayout.NORMALIZED
        return SchemaLayout.LEGACY

    async def legacy_data_exists(self, user_id: str) -> bool:
        return await self._store.get(legacy_data_path(normalize_user_id(user_id))) is not None

    async def read_aggregate(self, user_id: str) -> UserAggregate:
        user_id = normalize_user_id(user_id)
        layout = await self.resolve_layout(user_id)
        if layout is SchemaLayout.NORMALIZED:
            quizzes, classes, progress, achievements = await asyncio.gather(
                self._normalized_quizzes(user_id),
                self._normalized_classes(user_id),
                self._normalized_progress(user_id),
                self._normalized_achievements(user_id),
            )
            return UserAggregate(quizzes=quizzes, classes=classes, progress=progress, achievements=achievements)
        return await self._legacy_aggregate(user_id)

    async def read_quiz(self, user_id: str, quiz_id: str) -> Optional[Quiz]:
        user_id = normalize_user_id(user_id)
        layout = await self.resolve_layout(user_id)
        if layout is SchemaLayout.NORMALIZED:
            payload = await self._store.get(quiz_path(user_id, quiz_id))
            return Quiz.model_validate({**payload, "id": quiz_id}) if payload is not None else None
        aggregate = await self._legacy_aggregate(user_id)
        return next((quiz for quiz in aggregate.quizzes if quiz.id == quiz_id), None)

    async def list_quizzes(self, user_id: str) -> List[Quiz]:
        user_id = normalize_user_id(user_id)
        if await self.resolve_layout(user_id) is SchemaLayout.NORMALIZED:
            return await self._normalized_quizzes(user_id)
        return (await self._legacy_aggregate(user_id)).quizzes

    async def list_quizzes_page(
        self,
        user_id: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        cursor: Optional[str] = None,
    ) -> QuizPage:
        """Newest-first page of quizzes.

        Only the normalized layout paginates; legacy users get every quiz
        in a single page.
        """
        if page_size < 1:
            raise ValueError("page_size must be positive.")
        user_id = normalize_user_id(user_id)
        if await self.resolve_layout(user_id) is SchemaLayout.LEGACY:
            quizzes = (await self._legacy_aggregate(user_id)).quizzes
            return QuizPage(quizzes=quizzes, cursor=None, has_more=False)

        documents = await self._store.list(
            quizzes_collection(user_id),
            order_by="createdAt",
            descending=True,
            limit=page_size + 1,
            start_after=cursor,
        )
        page = documents[:page_size]
        return QuizPage(
            quizzes=[Quiz.model_validate({**doc.data, "id": doc.id}) for doc in page],
            cursor=page[-1].id if page else None,
            has_more=len(documents) > page_size,
        )

    async def read_progress(self, user_id: str) -> UserProgress:
        user_id = normalize_user_id(user_id)
        if await self.resolve_layout(user_id) is SchemaLayout.NORMALIZED:
            return await self._normalized_progress(user_id)
        return (await self._legacy_aggregate(user_id)).progress

    async def read_achievements(self, user_id: str) -> UserAchievements:
        user_id = normalize_user_id(user_id)
        if await self.resolve_layout(user_id) is SchemaLayout.NORMALIZED:
            return await self._normalized_achievements(user_id)
        return (await self._legacy_aggregate(user_id)).achievements

    async def list_classes(self, user_id: str) -> List[UserClass]:
        user_id = normalize_user_id(user_id)
        if await self.resolve_layout(user_id) is SchemaLayout.NORMALIZED:
            return await self._normalized_classes(user_id)
        return (await self._legacy_aggregate(user_id)).classes

    async def get_account(self, user_id: str) -> Optional[UserProfile]:
        """Profile attributes, falling back to the legacy account document."""
        user_id = normalize_user_id(user_id)
        payload = await self._store.get(profile_path(user_id))
        if payload is None:
            payload = await self._store.get(legacy_account_path(user_id))
        return UserProfile.model_validate(payload) if payload is not None else None

    async def count_quizzes_since(self, user_id: str, since: datetime) -> int:
        """Quizzes whose ``createdAt`` is at or after ``since`` (plan limits)."""
        threshold = created_at_millis(since)
        count = 0
        for quiz in await self.list_quizzes(user_id):
            created = created_at_millis(quiz.created_at)
            if created is not None and created >= threshold:
                count += 1
        return count

    # ------------------------------------------------------------------
    # Layout-specific helpers
    # ------------------------------------------------------------------

    async def _legacy_aggregate(self, user_id: str) -> UserAggregate:
        payload = await self._store.get(legacy_data_path(user_id))
        if payload is None:
            return UserAggregate()
        return UserAggregate.model_validate(
            {
                **payload,
                "quizzes": payload.get("quizzes") or [],
                "classes": payload.get("classes") or [],
                "progress": payload.get("progress") or default_progress(),
                "achievements": payload.get("achievements") or default_achievements(),
            }
        )

    async def _normalized_quizzes(self, user_id: str) -> List[Quiz]:
        documents = await self._store.list(quizzes_collection(user_id), order_by="createdAt", descending=True)
        return [Quiz.model_validate({**doc.data, "id": doc.id}) for doc in documents]

    async def _normalized_classes(self, user_id: str) -> List[UserClass]:
        documents = await self._store.list(classes_collection(user_id), order_by="createdAt", descending=True)
        return [UserClass.model_validate({**doc.data, "id": doc.id}) for doc in documents]

    async def _normalized_progress(self, user_id: str) -> UserProgress:
        payload = await self._store.get(progress_path(user_id))
        return UserProgress.model_validate(payload) if payload is not None else UserProgress()

    async def _normalized_achievements(self, user_id: str) -> UserAchievements:
        payload = await self._store.get(achievements_path(user_id))
        return UserAchievements.model_validate(payload) if payload is not None else UserAchievements()


# ----------------------------------------------------------------------
# Writer
# ----------------------------------------------------------------------


class UserDataWriter:
    """Writes user data into whichever layout is authoritative.

    Normalized writes touch a single document. Legacy writes rewrite the
    whole aggregate and are not serialized against each other, so two
    concurrent legacy writers for one user can lose an update.
    """

    def __init__(self, store: DocumentStore, reader: Optional[UserDataReader] = None) -> None:
        self._store = store
        self._reader = reader or UserDataReader(store)

    async def register_user(self, user_id: str, profile: Optional[UserProfile] = None) -> UserProfile:
        """Create the profile for a new user directly in the normalized layout."""
        user_id = normalize_user_id(user_id)
        fields = profile.to_document() if profile is not None else {}
        for key in ("migrated", "migratedAt", "migrationComplete", "rolledBackAt"):
            fields.pop(key, None)

        if await self._reader.legacy_data_exists(user_id):
            # Pre-existing data must go through the migration engine.
            logger.info("User %s already has legacy data; storing profile without migration flags", user_id)
            await self._store.set(profile_path(user_id), fields, merge=True)
        else:
            await self._store.set(
                profile_path(user_id),
                {
                    **fields,
                    "migrated": True,
                    "migratedAt": SERVER_TIMESTAMP,
                    "migrationComplete": True,
                },
                merge=True,
            )
        stored = await self._reader.read_profile(user_id)
        if stored is None:
            raise DocumentStoreError(f"Profile for user {user_id} was not stored.")
        return stored

    async def save_quiz(self, user_id: str, quiz: Quiz) -> None:
        user_id = normalize_user_id(user_id)
        document = quiz.to_document()
        layout = await self._reader.resolve_layout(user_id)
        if layout is SchemaLayout.NORMALIZED:
            await self._store.set(quiz_path(user_id, quiz.id), {**document, "updatedAt": SERVER_TIMESTAMP})
            return

        legacy = await self._store.get(legacy_data_path(user_id))
        if legacy is None:
            await self._store.set(
                legacy_data_path(user_id),
                {
                    "quizzes": [document],
                    "classes": [],
                    "progress": default_progress(),
                    "achievements": default_achievements(),
                },
            )
            return

        quizzes = list(legacy.get("quizzes") or [])
        index = next((i for i, entry in enumerate(quizzes) if entry.get("id") == quiz.id), None)
        if index is None:
            quizzes.insert(0, document)
        else:
            quizzes[index] = document
        await self._store.update(legacy_data_path(user_id), {"quizzes": quizzes})

    async def delete_quiz(self, user_id: str, quiz_id: str) -> None:
        user_id = normalize_user_id(user_id)
        layout = await self._reader.resolve_layout(user_id)
        if layout is SchemaLayout.NORMALIZED:
            await self._store.delete(quiz_path(user_id, quiz_id))
            return

        legacy = await self._store.get(legacy_data_path(user_id))
        if legacy is None:
            return
        quizzes = [entry for entry in legacy.get("quizzes") or [] if entry.get("id") != quiz_id]
        await self._store.update(legacy_data_path(user_id), {"quizzes": quizzes})

    async def update_progress(self, user_id: str, partial: Union[Mapping[str, Any], UserProgress]) -> None:
        user_id = normalize_user_id(user_id)
        fields = _as_fields(partial)
        layout = await self._reader.resolve_layout(user_id)
        if layout is SchemaLayout.NORMALIZED:
            await self._store.set(progress_path(user_id), {**fields, "updatedAt": SERVER_TIMESTAMP}, merge=True)
            return
        await self._merge_legacy_field(user_id, "progress", fields, default_progress)

    async def update_achievements(
        self,
        user_id: str,
        partial: Union[Mapping[str, Any], UserAchievements],
    ) -> None:
        user_id = normalize_user_id(user_id)
        fields = _as_fields(partial)
        layout = await self._reader.resolve_layout(user_id)
        if layout is SchemaLayout.NORMALIZED:
            await self._store.set(achievements_path(user_id), fields, merge=True)
            return
        await self._merge_legacy_field(user_id, "achievements", fields, default_achievements)

    async def save_all(self, user_id: str, data: Mapping[str, Any]) -> None:
        """Bulk write of progress and achievements.

        Quizzes are ignored in the normalized layout; use ``save_quiz``.
        """
        user_id = normalize_user_id(user_id)
        layout = await self._reader.resolve_layout(user_id)
        if layout is SchemaLayout.LEGACY:
            fields = {
                key: value.to_document() if isinstance(value, _Document) else value for key, value in data.items()
            }
            await self._store.set(legacy_data_path(user_id), fields, merge=True)
            return

        batch = self._store.batch()
        if data.get("progress"):
            batch.set(
                progress_path(user_id),
                {**_as_fields(data["progress"]), "updatedAt": SERVER_TIMESTAMP},
                merge=True,
            )
        if data.get("achievements"):
            batch.set(achievements_path(user_id), _as_fields(data["achievements"]), merge=True)
        await batch.commit()

    async def _merge_legacy_field(self, user_id: str, field: str, fields: Dict[str, Any], default) -> None:
        legacy = await self._store.get(legacy_data_path(user_id))
        if legacy is None:
            return
        current = legacy.get(field) or default()
        await self._store.update(legacy_data_path(user_id), {field: {**current, **fields}})


__all__ = [
    "ARCHIVE_COLLECTION",
    "LEGACY_COLLECTION",
    "Quiz",
    "QuizOption",
    "QuizPage",
    "QuizQuestion",
    "SchemaLayout",
    "UserAchievements",
    "UserAggregate",
    "UserClass",
    "UserDataReader",
    "UserDataWriter",
    "UserProfile",
    "UserProgress",
    "achievements_path",
    "archive_path",
    "class_path",
    "classes_collection",
    "created_at_millis",
    "default_achievements",
    "default_progress",
    "legacy_account_path",
    "legacy_data_path",
    "normalize_user_id",
    "profile_path",
    "progress_path",
    "quiz_path",
    "quizzes_collection",
]
