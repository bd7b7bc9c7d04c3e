"""In-memory owner of the application snapshot and its action handlers.

Every mutation goes through a handler on :class:`RecordStore`. Handlers
validate before touching state, raise :class:`RecordValidationError` without
side effects, keep the derived module question counts in step with the
quizzes, and finally notify subscribers with the logical keys that changed.
Persistence is someone else's job (see ``sync.SyncOrchestrator``).
"""

from __future__ import annotations

import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

import catalog
from bootstrap import initial_payload, normalize_snapshot, refresh_question_counts
from schemas import (
    CREDENTIAL_FIELD,
    PARTITION_NAMES,
    AppSettings,
    Email,
    Module,
    ModuleCategory,
    ModuleStatus,
    Question,
    Quiz,
    Snapshot,
    Theme,
    User,
    UserAnswer,
    strip_credentials,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[FrozenSet[str], bool], None]

QUIZ_KEYS = frozenset({"quizzes", "moduleCategories"})
ALL_KEYS = frozenset(PARTITION_NAMES) | {"emailLog"}

PASS_SUBJECT = "Congratulations on Passing Your Training!"


class RecordValidationError(ValueError):
    """A handler rejected its input; the snapshot was left untouched."""


def slugify(title: str) -> str:
    return re.sub(r"\s+", "_", title.strip().lower())


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def completion_score(correct: int, total: int) -> int:
    """Percentage of correct answers, rounded half up; 0 when nothing counts."""
    if total <= 0:
        return 0
    return round_half_up(100 * correct / total)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _require_title(title: str, what: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise RecordValidationError(f"{what} name cannot be empty.")
    return cleaned


class RecordStore:
    def __init__(self, snapshot: Optional[Snapshot] = None, clock: Callable[[], float] = time.time) -> None:
        self.snapshot = snapshot if snapshot is not None else normalize_snapshot(initial_payload())
        self._clock = clock
        self._listeners: List[ChangeListener] = []
        self._last_issued_id = 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], clock: Callable[[], float] = time.time) -> "RecordStore":
        try:
            snapshot = normalize_snapshot(payload)
        except ValidationError as exc:
            raise RecordValidationError(f"Invalid snapshot: {exc}") from exc
        return cls(snapshot, clock=clock)

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, keys: Iterable[str], urgent: bool = False) -> None:
        changed = frozenset(keys)
        for listener in list(self._listeners):
            listener(changed, urgent)

    # ------------------------------------------------------------------
    # lookups and id generation
    # ------------------------------------------------------------------
    @property
    def users(self) -> List[User]:
        return self.snapshot.users

    @property
    def quizzes(self) -> List[Quiz]:
        return self.snapshot.quizzes

    @property
    def module_categories(self) -> List[ModuleCategory]:
        return self.snapshot.module_categories

    @property
    def settings(self) -> AppSettings:
        return self.snapshot.settings

    @property
    def email_log(self) -> List[Email]:
        return self.snapshot.email_log

    def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        return next((quiz for quiz in self.quizzes if quiz.id == quiz_id), None)

    def get_category(self, category_id: str) -> Optional[ModuleCategory]:
        return next((category for category in self.module_categories if category.id == category_id), None)

    def get_user(self, user_id: int) -> Optional[User]:
        return next((user for user in self.users if user.id == user_id), None)

    def _require_user(self, user_id: int) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise RecordValidationError(f"User {user_id} not found.")
        return user

    def _quiz_by_name(self, name: str) -> Optional[Quiz]:
        return next((quiz for quiz in self.quizzes if quiz.name == name), None)

    def _name_taken(self, name: str, ignore_id: Optional[str] = None) -> bool:
        lowered = name.lower()
        return any(quiz.name.lower() == lowered and quiz.id != ignore_id for quiz in self.quizzes)

    def _millis(self) -> int:
        return int(self._clock() * 1000)

    def _next_id(self, in_use: Iterable[int]) -> int:
        used = set(in_use)
        candidate = max(self._millis(), self._last_issued_id + 1)
        while candidate in used:
            candidate += 1
        self._last_issued_id = candidate
        return candidate

    def _next_question_id(self) -> int:
        return self._next_id(question.id for quiz in self.quizzes for question in quiz.questions)

    def _new_slug(self, title: str) -> str:
        taken = {quiz.id for quiz in self.quizzes} | {category.id for category in self.module_categories}
        base = slugify(title)
        millis = self._millis()
        while f"{base}_{millis}" in taken:
            millis += 1
        return f"{base}_{millis}"

    def _new_module(self, module_id: str, title: str, sub_category: Optional[str] = None) -> Module:
        position = sum(len(category.modules) for category in self.module_categories)
        return Module(
            id=module_id,
            title=title,
            icon_key=catalog.icon_for(position),
            status=ModuleStatus.NOT_STARTED,
            theme=Theme.model_validate(catalog.theme_for(position)),
            sub_category=sub_category,
        )

    def _build_question(self, data: Mapping[str, Any], category: str) -> Question:
        fields = dict(data)
        fields.pop("id", None)
        fields["category"] = category
        fields["id"] = self._next_question_id()
        try:
            return Question.model_validate(fields)
        except ValidationError as exc:
            raise RecordValidationError(f"Invalid question: {exc}") from exc

    def _quizzes_changed(self, urgent: bool = False, extra: Iterable[str] = ()) -> None:
        refresh_question_counts(self.snapshot)
        self._notify(QUIZ_KEYS | frozenset(extra), urgent)

    # ------------------------------------------------------------------
    # exam categories
    # ------------------------------------------------------------------
    def create_exam_category(self, title: str) -> str:
        """Create an empty exam folder holding one empty quiz; returns its id."""
        title = _require_title(title, "Category")
        if self._name_taken(title):
            raise RecordValidationError("An exam category with a similar name already exists.")

        new_id = self._new_slug(title)
        module = self._new_module(new_id, title)
        self.quizzes.append(Quiz(id=new_id, name=title, questions=[]))
        self.module_categories.append(ModuleCategory(id=new_id, title=title, modules=[module]))
        self._quizzes_changed()
        return new_id

    def edit_exam_category(self, category_id: str, title: str) -> None:
        title = _require_title(title, "Category")
        category = self.get_category(category_id)
        if category is None:
            raise RecordValidationError(f"Exam category {category_id!r} not found.")
        if self._name_taken(title, ignore_id=category_id):
            raise RecordValidationError("An exam category with a similar name already exists.")

        category.title = title
        for module in category.modules:
            if module.id == category_id:
                module.title = title
        quiz = self.get_quiz(category_id)
        if quiz is not None:
            quiz.name = title
            for question in quiz.questions:
                question.category = title
        self._quizzes_changed()

    def delete_exam_category(self, category_id: str) -> None:
        """Delete a folder with its quizzes and every user reference to them."""
        category = self.get_category(category_id)
        if category is None:
            raise RecordValidationError(f"Exam category {category_id!r} not found.")

        module_ids = {module.id for module in category.modules}
        self.snapshot.module_categories = [c for c in self.module_categories if c.id != category_id]
        self.snapshot.quizzes = [quiz for quiz in self.quizzes if quiz.id not in module_ids]
        for user in self.users:
            user.assigned_exams = [exam for exam in user.assigned_exams if exam != category_id]
            user.module_progress = {
                module_id: status
                for module_id, status in user.module_progress.items()
                if module_id not in module_ids
            }
        logger.info("Deleted exam category %s (%d modules)", category_id, len(module_ids))
        self._quizzes_changed(extra={"users"})

    # ------------------------------------------------------------------
    # questions
    # ------------------------------------------------------------------
    def add_question(self, data: Mapping[str, Any]) -> Question:
        """Append a question to the quiz named by ``data["category"]``."""
        category = data.get("category")
        quiz = self._quiz_by_name(category) if isinstance(category, str) else None
        if quiz is None:
            raise RecordValidationError(
                "Could not find the selected quiz category to add the question to."
            )
        question = self._build_question(data, quiz.name)
        quiz.questions.append(question)
        self._quizzes_changed()
        return question

    def add_question_to_new_category(self, data: Mapping[str, Any], title: str) -> Question:
        title = _require_title(title, "Category")
        if self._name_taken(title):
            raise RecordValidationError(
                "An exam category with this name already exists. "
                "Please add the question to the existing category."
            )
        question = self._build_question(data, title)

        new_id = self._new_slug(title)
        module = self._new_module(new_id, title)
        self.quizzes.append(Quiz(id=new_id, name=title, questions=[question]))
        self.module_categories.append(ModuleCategory(id=new_id, title=title, modules=[module]))
        self._quizzes_changed()
        return question

    def add_question_to_new_subtopic(
        self, data: Mapping[str, Any], title: str, parent_category_id: str
    ) -> Question:
        title = _require_title(title, "Sub-topic")
        parent = self.get_category(parent_category_id)
        if parent is None:
            raise RecordValidationError(f"Exam category {parent_category_id!r} not found.")
        if self._name_taken(title):
            raise RecordValidationError(
                "A quiz with this sub-topic name already exists. Please choose a different name."
            )
        question = self._build_question(data, title)

        new_id = self._new_slug(title)
        module = self._new_module(new_id, title, sub_category=title)
        self.quizzes.append(Quiz(id=new_id, name=title, questions=[question]))
        parent.modules.append(module)
        self._quizzes_changed()
        return question

    def _locate_question(self, question_id: int) -> tuple[Quiz, int]:
        for quiz in self.quizzes:
            for index, question in enumerate(quiz.questions):
                if question.id == question_id:
                    return quiz, index
        raise RecordValidationError(f"Question {question_id} not found.")

    def update_question(self, question: Mapping[str, Any] | Question) -> Question:
        """Replace a question in place; it stays in the quiz that owns it."""
        data = question.to_payload() if isinstance(question, Question) else dict(question)
        if "id" not in data:
            raise RecordValidationError("Question id is required.")
        quiz, index = self._locate_question(int(data["id"]))
        data["category"] = quiz.name
        try:
            updated = Question.model_validate(data)
        except ValidationError as exc:
            raise RecordValidationError(f"Invalid question: {exc}") from exc
        quiz.questions[index] = updated
        self._quizzes_changed()
        return updated

    def delete_question(self, question_id: int) -> None:
        quiz, index = self._locate_question(question_id)
        del quiz.questions[index]
        self._quizzes_changed()

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def _validate_user(self, data: Mapping[str, Any] | User) -> User:
        if isinstance(data, User):
            return data.model_copy(deep=True)
        try:
            return User.model_validate(data)
        except ValidationError as exc:
            raise RecordValidationError(f"Invalid user: {exc}") from exc

    def add_user(self, user: Mapping[str, Any] | User) -> User:
        """Add a user. A new account is pushed to the mirror without waiting."""
        if isinstance(user, Mapping) and not user.get("id"):
            user = {**user, "id": self._next_id(u.id for u in self.users)}
        new_user = self._validate_user(user)
        if any(existing.username == new_user.username for existing in self.users):
            raise RecordValidationError("Username already exists.")
        if self.get_user(new_user.id) is not None:
            raise RecordValidationError(f"User id {new_user.id} already exists.")
        self.users.append(new_user)
        self._notify({"users"}, urgent=True)
        return new_user

    def update_user(self, user: Mapping[str, Any] | User) -> User:
        updated = self._validate_user(user)
        if self.get_user(updated.id) is None:
            raise RecordValidationError(f"User {updated.id} not found.")
        if any(other.username == updated.username and other.id != updated.id for other in self.users):
            raise RecordValidationError("Username already exists.")
        self.snapshot.users = [updated if u.id == updated.id else u for u in self.users]
        self._notify({"users"})
        return updated

    def replace_users(self, users: Sequence[Mapping[str, Any] | User]) -> None:
        validated = [self._validate_user(user) for user in users]
        if len({user.username for user in validated}) != len(validated):
            raise RecordValidationError("Username already exists.")
        if len({user.id for user in validated}) != len(validated):
            raise RecordValidationError("Duplicate user ids.")
        self.snapshot.users = validated
        self._notify({"users"})

    def delete_user(self, user_id: int) -> None:
        self._require_user(user_id)
        self.snapshot.users = [user for user in self.users if user.id != user_id]
        self._notify({"users"})

    # ------------------------------------------------------------------
    # notifications and settings
    # ------------------------------------------------------------------
    def _log_email(self, to: str, subject: str, body: str) -> Email:
        email = Email(
            id=self._next_id(entry.id for entry in self.email_log),
            to=to,
            subject=subject,
            body=body,
            timestamp=_utc_now_iso(),
        )
        self.email_log.insert(0, email)
        logger.info("Notification queued for %s: %s", to, subject)
        return email

    def send_notification(self, to: str, subject: str, body: str) -> Email:
        """Record a notification at the head of the email log."""
        if not to:
            raise RecordValidationError("Notification recipient is required.")
        email = self._log_email(to, subject, body)
        self._notify({"emailLog"})
        return email

    def update_settings(self, changes: Optional[Mapping[str, Any]] = None, **fields: Any) -> AppSettings:
        merged = self.settings.to_payload()
        for key, value in {**(changes or {}), **fields}.items():
            info = AppSettings.model_fields.get(key)
            merged[info.alias if info is not None and info.alias else key] = value
        try:
            self.snapshot.settings = AppSettings.model_validate(merged)
        except ValidationError as exc:
            raise RecordValidationError(f"Invalid settings: {exc}") from exc
        self._notify({"settings"})
        return self.snapshot.settings

    # ------------------------------------------------------------------
    # training flow
    # ------------------------------------------------------------------
    def visible_categories(self, user_id: int) -> List[ModuleCategory]:
        """The user's assigned folders with per-user status and live counts."""
        user = self._require_user(user_id)
        assigned = set(user.assigned_exams)
        counts = {quiz.id: len(quiz.questions) for quiz in self.quizzes}

        visible: List[ModuleCategory] = []
        for category in self.module_categories:
            if category.id not in assigned or not category.modules:
                continue
            modules = [
                module.model_copy(
                    update={
                        "status": user.module_progress.get(module.id, ModuleStatus.NOT_STARTED),
                        "questions": counts.get(module.id, 0),
                    }
                )
                for module in category.modules
            ]
            visible.append(category.model_copy(update={"modules": modules}))
        return visible

    def _visible_module(self, user_id: int, module_id: str) -> Module:
        for category in self.visible_categories(user_id):
            for module in category.modules:
                if module.id == module_id:
                    return module
        raise RecordValidationError(f"Module {module_id!r} is not assigned to user {user_id}.")

    def set_module_status(self, user_id: int, module_id: str, status: ModuleStatus | str) -> User:
        user = self._require_user(user_id)
        self._visible_module(user_id, module_id)
        if user.training_status == "not-started":
            user.training_status = "in-progress"
        user.module_progress[module_id] = ModuleStatus(status)
        self._notify({"users"})
        self.evaluate_completion(user_id)
        return user

    def start_quiz(self, user_id: int, module_id: str) -> Optional[Quiz]:
        """Mark a module in progress and return its quiz.

        A module without questions has nothing to take, so it is completed
        immediately and ``None`` is returned.
        """
        module = self._visible_module(user_id, module_id)
        if module.questions > 0:
            self.set_module_status(user_id, module_id, ModuleStatus.IN_PROGRESS)
            return self.get_quiz(module_id)
        self.set_module_status(user_id, module_id, ModuleStatus.COMPLETED)
        return None

    def complete_quiz(
        self, user_id: int, module_id: str, answers: Sequence[Mapping[str, Any] | UserAnswer]
    ) -> User:
        user = self._require_user(user_id)
        self._visible_module(user_id, module_id)
        try:
            submitted = [
                answer if isinstance(answer, UserAnswer) else UserAnswer.model_validate(answer)
                for answer in answers
            ]
        except ValidationError as exc:
            raise RecordValidationError(f"Invalid answers: {exc}") from exc

        answered = {answer.question_id for answer in submitted}
        user.answers = [a for a in user.answers if a.question_id not in answered] + submitted
        user.module_progress[module_id] = ModuleStatus.COMPLETED
        if user.training_status == "not-started":
            user.training_status = "in-progress"
        self._notify({"users"})
        self.evaluate_completion(user_id)
        return user

    def reset_progress(self, user_id: int) -> User:
        user = self._require_user(user_id)
        user.training_status = "not-started"
        user.module_progress = {}
        user.answers = []
        user.last_score = None
        user.submission_date = None
        self._notify({"users"})
        return user

    def evaluate_completion(self, user_id: int) -> Optional[str]:
        """Grade an in-progress user whose assigned modules are all Completed.

        Returns the new training status, or ``None`` when nothing changed.
        """
        user = self._require_user(user_id)
        if user.training_status != "in-progress":
            return None

        modules = [module for category in self.visible_categories(user_id) for module in category.modules]
        if not modules or any(module.status != ModuleStatus.COMPLETED for module in modules):
            return None

        assigned_quiz_ids = {module.id for module in modules}
        question_ids = {
            question.id
            for quiz in self.quizzes
            if quiz.id in assigned_quiz_ids
            for question in quiz.questions
        }
        counted = [answer for answer in user.answers if answer.question_id in question_ids]
        score = completion_score(sum(1 for answer in counted if answer.is_correct), len(counted))
        passed = score >= catalog.PASSING_PERCENTAGE

        user.training_status = "passed" if passed else "failed"
        user.last_score = score
        user.submission_date = _utc_now_iso()
        changed = {"users"}
        if passed:
            self._log_email(
                user.username,
                PASS_SUBJECT,
                f"Hi {user.full_name},\n\nYou have successfully passed the Cyber Security training "
                f"with a score of {score}%.\n\nWell done!",
            )
            changed.add("emailLog")
        logger.info("User %s finished training: %s (%d%%)", user.username, user.training_status, score)
        self._notify(changed, urgent=True)
        return user.training_status

    # ------------------------------------------------------------------
    # snapshot
    # ------------------------------------------------------------------
    def snapshot_payload(self, include_credentials: bool = True) -> Dict[str, Any]:
        payload = self.snapshot.to_payload()
        return payload if include_credentials else strip_credentials(payload)

    def partitions(self) -> Dict[str, Any]:
        """The four remotely partitioned values, keyed by logical name."""
        payload = self.snapshot.to_payload()
        return {name: payload[name] for name in PARTITION_NAMES}

    def import_snapshot(self, payload: Mapping[str, Any], notify: bool = True) -> Snapshot:
        """Replace the whole state with a validated snapshot.

        The current mirror token survives an import that omits it, since
        exports never carry one.
        """
        if not isinstance(payload, Mapping):
            raise RecordValidationError("Snapshot must be a JSON object.")
        for field in ("users", "quizzes"):
            if not isinstance(payload.get(field), list):
                raise RecordValidationError(f"Snapshot is missing the '{field}' list.")

        data = dict(payload)
        settings = data.get("settings")
        if settings is None:
            data["settings"] = self.settings.to_payload()
        elif isinstance(settings, Mapping) and not settings.get(CREDENTIAL_FIELD) and self.settings.github_pat:
            data["settings"] = {**settings, CREDENTIAL_FIELD: self.settings.github_pat}

        try:
            snapshot = normalize_snapshot(data)
        except ValidationError as exc:
            raise RecordValidationError(f"Invalid snapshot: {exc}") from exc
        self._check_references(snapshot)

        self.snapshot = snapshot
        if notify:
            self._notify(ALL_KEYS)
        return snapshot

    @staticmethod
    def _check_references(snapshot: Snapshot) -> None:
        ids = [quiz.id for quiz in snapshot.quizzes]
        if len(set(ids)) != len(ids):
            raise RecordValidationError("Duplicate quiz ids in snapshot.")
        names = [quiz.name.lower() for quiz in snapshot.quizzes]
        if len(set(names)) != len(names):
            raise RecordValidationError("Duplicate quiz names in snapshot.")
        known = set(ids)
        for category in snapshot.module_categories:
            for module in category.modules:
                if module.id not in known:
                    raise RecordValidationError(
                        f"Module {module.id!r} in category {category.id!r} has no matching quiz."
                    )
