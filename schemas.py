"""Pydantic schemas for the training data snapshot and sync status."""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "CREDENTIAL_FIELD",
    "PARTITION_NAMES",
    "ModuleStatus",
    "Question",
    "Quiz",
    "Theme",
    "Module",
    "ModuleCategory",
    "UserAnswer",
    "User",
    "AppSettings",
    "Email",
    "Snapshot",
    "GithubSyncStatus",
    "strip_credentials",
]

# Settings field holding the mirror token; never exported or mirrored.
CREDENTIAL_FIELD = "githubPat"

# Logical names of the four remote partitions, in write order.
PARTITION_NAMES = ("users", "quizzes", "moduleCategories", "settings")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ModuleStatus(str, Enum):
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"


class Question(_CamelModel):
    id: int = Field(description="Creation-timestamp derived identifier, unique across quizzes.")
    category: str = Field(description="Name of the quiz the question belongs to.")
    question: str
    options: List[str] = Field(default_factory=list)
    correct_answer: str

    @model_validator(mode="after")
    def _answer_is_an_option(self) -> "Question":
        if self.correct_answer not in self.options:
            raise ValueError(
                f"Question {self.id}: correct answer {self.correct_answer!r} is not one of its options"
            )
        return self


class Quiz(_CamelModel):
    id: str
    name: str
    questions: List[Question] = Field(default_factory=list)


class Theme(_CamelModel):
    icon_bg: str
    icon_color: str


class Module(_CamelModel):
    id: str = Field(description="Shared with the id of the quiz this module presents.")
    title: str
    questions: int = Field(
        default=0,
        ge=0,
        description="Cached length of the matching quiz's question list; recomputed, never edited.",
    )
    icon_key: str = "Key"
    status: ModuleStatus = ModuleStatus.NOT_STARTED
    theme: Theme
    sub_category: str | None = None


class ModuleCategory(_CamelModel):
    id: str
    title: str
    modules: List[Module] = Field(default_factory=list)


class UserAnswer(_CamelModel):
    question_id: int
    question_text: str = ""
    selected_answer: str
    correct_answer: str
    is_correct: bool


class User(_CamelModel):
    id: int
    full_name: str
    username: str
    password: str
    role: Literal["user", "admin"] = "user"
    assigned_exams: List[str] = Field(
        default_factory=list,
        description="Ids of the module categories (exam folders) assigned to the user.",
    )
    training_status: Literal["not-started", "in-progress", "passed", "failed"] = "not-started"
    last_score: int | None = None
    answers: List[UserAnswer] = Field(default_factory=list)
    module_progress: Dict[str, ModuleStatus] = Field(default_factory=dict)
    submission_date: str | int | None = None


class AppSettings(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    github_owner: str = ""
    github_repo: str = ""
    github_path: str = "data.json"
    github_pat: str = ""
    logo: str | None = None
    company_full_name: str | None = None
    course_name: str | None = None
    certification_body_text: str | None = None
    certification_cycle_years: int | None = None
    signature1: str | None = None
    signature1_name: str | None = None
    signature1_title: str | None = None
    signature2: str | None = None
    signature2_name: str | None = None
    signature2_title: str | None = None
    certification_seal: str | None = None

    def mirror_configured(self) -> bool:
        return all((self.github_owner, self.github_repo, self.github_path, self.github_pat))


class Email(_CamelModel):
    id: int
    to: str
    subject: str
    body: str
    timestamp: str | int


class Snapshot(_CamelModel):
    users: List[User] = Field(default_factory=list)
    quizzes: List[Quiz] = Field(default_factory=list)
    module_categories: List[ModuleCategory] = Field(default_factory=list)
    settings: AppSettings = Field(default_factory=AppSettings)
    email_log: List[Email] = Field(default_factory=list)


class GithubSyncStatus(BaseModel):
    status: Literal["idle", "syncing", "success", "error"] = "idle"
    timestamp: str | None = None
    message: str | None = None


def strip_credentials(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a deep copy of a snapshot payload without the mirror token."""
    cleaned = copy.deepcopy(dict(payload))
    settings = cleaned.get("settings")
    if isinstance(settings, dict):
        settings.pop(CREDENTIAL_FIELD, None)
    return cleaned
