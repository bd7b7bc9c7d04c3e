"""Snapshot export/import and per-folder question bank files."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping

from pydantic import ValidationError

from record_store import RecordStore, RecordValidationError
from schemas import ModuleCategory, Question, Quiz

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ("users", "quizzes", "moduleCategories", "settings", "emailLog")


def export_snapshot(store: RecordStore) -> str:
    """Pretty JSON of the whole state, without the mirror token."""
    return json.dumps(store.snapshot_payload(include_credentials=False), indent=2, ensure_ascii=False)


def parse_snapshot(text: str) -> Dict[str, Any]:
    """Parse an exported snapshot, checking its top-level shape only.

    Field validation happens in :meth:`RecordStore.import_snapshot`.
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise RecordValidationError(f"Snapshot file is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise RecordValidationError("Snapshot file must contain a JSON object.")

    for field in ("users", "quizzes"):
        if not isinstance(payload.get(field), list):
            raise RecordValidationError(f"Snapshot file is missing the '{field}' list.")
    for field in ("moduleCategories", "emailLog"):
        if payload.get(field) is not None and not isinstance(payload[field], list):
            raise RecordValidationError(f"Snapshot field '{field}' must be a list.")
    if payload.get("settings") is not None and not isinstance(payload["settings"], dict):
        raise RecordValidationError("Snapshot field 'settings' must be an object.")

    unknown = set(payload) - set(SNAPSHOT_FIELDS)
    if unknown:
        logger.info("Ignoring unknown snapshot fields: %s", ", ".join(sorted(unknown)))
    return {field: payload[field] for field in SNAPSHOT_FIELDS if field in payload}


def _require_category(store: RecordStore, category_id: str) -> ModuleCategory:
    category = store.get_category(category_id)
    if category is None:
        raise RecordValidationError(f"Exam category {category_id!r} not found.")
    return category


def export_folder(store: RecordStore, category_id: str) -> Dict[str, List[Dict[str, Any]]]:
    """Question bank of one exam folder, grouped by sub-topic (quiz name).

    Ids and the ``category`` field are left out; they are reassigned on import.
    """
    category = _require_category(store, category_id)
    exported: Dict[str, List[Dict[str, Any]]] = {}
    for module in category.modules:
        quiz = store.get_quiz(module.id)
        if quiz is None:
            continue
        exported[quiz.name] = [
            {
                "question": question.question,
                "options": list(question.options),
                "correctAnswer": question.correct_answer,
            }
            for question in quiz.questions
        ]
    return exported


def _validate_folder(payload: Any) -> Dict[str, List[Dict[str, Any]]]:
    if not isinstance(payload, Mapping):
        raise RecordValidationError("Folder file must map sub-topic names to question lists.")

    validated: Dict[str, List[Dict[str, Any]]] = {}
    seen: Dict[str, str] = {}
    for subtopic, questions in payload.items():
        if not isinstance(subtopic, str) or not subtopic.strip():
            raise RecordValidationError("Sub-topic names cannot be empty.")
        folded = subtopic.strip().lower()
        if folded in seen:
            raise RecordValidationError(
                f"Sub-topic {subtopic!r} duplicates {seen[folded]!r} in the same file."
            )
        seen[folded] = subtopic
        if not isinstance(questions, list):
            raise RecordValidationError(f"Sub-topic {subtopic!r} must hold a list of questions.")
        entries = []
        for position, raw in enumerate(questions, start=1):
            if not isinstance(raw, Mapping):
                raise RecordValidationError(f"{subtopic} #{position}: question must be an object.")
            entry = {
                "question": raw.get("question"),
                "options": raw.get("options"),
                "correctAnswer": raw.get("correctAnswer"),
            }
            try:
                # Placeholder id/category; only the shape and answer/option rule matter here.
                Question.model_validate({**entry, "id": 0, "category": subtopic})
            except ValidationError as exc:
                raise RecordValidationError(f"{subtopic} #{position}: {exc}") from exc
            entries.append(entry)
        validated[subtopic.strip()] = entries
    return validated


def import_folder(store: RecordStore, category_id: str, payload: Any) -> int:
    """Load a folder file into an exam folder; returns the number of questions added.

    The whole file is validated before anything is written. Questions for a
    sub-topic already in the folder are appended to its quiz; other
    sub-topics become new quizzes inside the folder.
    """
    category = _require_category(store, category_id)
    folder = _validate_folder(payload)

    in_folder: Dict[str, Quiz] = {}
    for module in category.modules:
        quiz = store.get_quiz(module.id)
        if quiz is not None:
            in_folder[quiz.name.lower()] = quiz
    for subtopic in folder:
        lowered = subtopic.lower()
        if lowered not in in_folder and any(q.name.lower() == lowered for q in store.quizzes):
            raise RecordValidationError(
                f"Sub-topic {subtopic!r} already exists as a quiz outside this folder."
            )

    added = 0
    for subtopic, entries in folder.items():
        if not entries:
            continue
        quiz = in_folder.get(subtopic.lower())
        if quiz is None:
            first, rest = entries[0], entries[1:]
            store.add_question_to_new_subtopic({**first, "category": subtopic}, subtopic, category_id)
            added += 1
            entries = rest
            quiz = store.get_quiz(category.modules[-1].id)
        for entry in entries:
            store.add_question({**entry, "category": quiz.name})
            added += 1
    logger.info("Imported %d questions into %s", added, category_id)
    return added
