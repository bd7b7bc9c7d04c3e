"""Startup loading: remote store, then local cache, then built-in defaults.

Also owns the category derivation used whenever a snapshot arrives without
``moduleCategories`` (legacy data, first load, imports of bare quiz sets).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

import catalog
from api_client import ApiError
from local_cache import LocalDurableCache
from schemas import ModuleStatus, Snapshot

logger = logging.getLogger(__name__)

LOAD_FAILED_MESSAGE = "Failed to load application data. Please try again later."


def _module_for(quiz: Mapping[str, Any], icon_key: str, theme: Mapping[str, str]) -> Dict[str, Any]:
    return {
        "id": quiz["id"],
        "title": quiz["name"],
        "questions": len(quiz.get("questions") or []),
        "iconKey": icon_key,
        "status": ModuleStatus.NOT_STARTED.value,
        "theme": dict(theme),
    }


def derive_module_categories(
    quizzes: Sequence[Mapping[str, Any]],
    layout: Iterable[Mapping[str, Any]] = catalog.DEFAULT_CATEGORY_LAYOUT,
) -> List[Dict[str, Any]]:
    """Group quizzes into exam folders.

    The default layout is filtered down to quizzes that exist; every quiz not
    covered by it gets a one-module folder of its own. Never drops a quiz.
    """
    by_id = {quiz["id"]: quiz for quiz in quizzes}
    categories: List[Dict[str, Any]] = []
    for entry in layout:
        modules = [
            _module_for(by_id[module_id], icon_key, catalog.theme_for(theme_index))
            for module_id, icon_key, theme_index in entry["modules"]
            if module_id in by_id
        ]
        if modules:
            categories.append({"id": entry["id"], "title": entry["title"], "modules": modules})

    known = {module["id"] for category in categories for module in category["modules"]}
    for index, quiz in enumerate(quizzes):
        if quiz["id"] in known:
            continue
        position = sum(len(category["modules"]) for category in categories) + index
        module = _module_for(quiz, catalog.icon_for(position), catalog.theme_for(position))
        categories.append({"id": quiz["id"], "title": quiz["name"], "modules": [module]})
        known.add(quiz["id"])
    return categories


def refresh_question_counts(snapshot: Snapshot) -> None:
    """Recompute every module's cached question count from its quiz."""
    counts = {quiz.id: len(quiz.questions) for quiz in snapshot.quizzes}
    for category in snapshot.module_categories:
        for module in category.modules:
            module.questions = counts.get(module.id, 0)


def normalize_snapshot(payload: Mapping[str, Any]) -> Snapshot:
    """Validate a raw payload, deriving categories it lacks.

    Raises ``pydantic.ValidationError`` for malformed payloads.
    """
    data = dict(payload)
    if not data.get("moduleCategories"):
        data["moduleCategories"] = derive_module_categories(data.get("quizzes") or [])
    if data.get("emailLog") is None:
        data["emailLog"] = []
    if data.get("settings") is None:
        data["settings"] = catalog.default_settings()
    snapshot = Snapshot.model_validate(data)
    refresh_question_counts(snapshot)
    return snapshot


def initial_payload() -> Dict[str, Any]:
    quizzes = catalog.default_quizzes()
    return {
        "users": catalog.default_users(),
        "quizzes": quizzes,
        "moduleCategories": derive_module_categories(quizzes),
        "settings": catalog.default_settings(),
        "emailLog": [],
    }


@dataclass
class BootstrapResult:
    snapshot: Snapshot
    source: str
    error: Optional[str] = None


async def load_snapshot(client: Any, cache: LocalDurableCache) -> BootstrapResult:
    """Load the application state, degrading remote, then cache, then defaults.

    ``client`` needs an async ``read()``; :class:`api_client.DataApiClient` is
    the production implementation.
    """
    cached = cache.load()

    try:
        remote = await client.read()
    except ApiError as exc:
        logger.warning("Remote fetch failed (%s); falling back to the local cache", exc.message)
    else:
        payload = dict(remote)
        if payload.get("emailLog") is None and cached and isinstance(cached.get("emailLog"), list):
            # The email log is not partitioned remotely; keep the device's copy.
            payload["emailLog"] = cached["emailLog"]
        try:
            snapshot = normalize_snapshot(payload)
        except ValidationError as exc:
            logger.error("Remote data failed validation; falling back to the local cache: %s", exc)
        else:
            cache.save(snapshot.to_payload())
            return BootstrapResult(snapshot=snapshot, source="remote")

    if cached is not None:
        try:
            return BootstrapResult(snapshot=normalize_snapshot(cached), source="cache")
        except ValidationError as exc:
            logger.error("Local cache data failed validation, returning initial data: %s", exc)

    return BootstrapResult(
        snapshot=normalize_snapshot(initial_payload()),
        source="defaults",
        error=LOAD_FAILED_MESSAGE,
    )
