import asyncio

import catalog
from api_client import ApiError
from bootstrap import LOAD_FAILED_MESSAGE, derive_module_categories, initial_payload, load_snapshot


class StubClient:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error

    async def read(self):
        if self.error is not None:
            raise self.error
        return self.data


def _quiz(quiz_id, name, count=1):
    return {
        "id": quiz_id,
        "name": name,
        "questions": [
            {"id": i, "category": name, "question": f"q{i}", "options": ["a", "b"], "correctAnswer": "a"}
            for i in range(count)
        ],
    }


def test_derivation_filters_layout_and_adds_uncovered_quizzes():
    quizzes = [
        _quiz("password_security", "Password & Account Security", 2),
        _quiz("legal_exam", "Legal Exam", 3),
        _quiz("cloud_101", "Cloud 101"),
    ]

    categories = derive_module_categories(quizzes)

    assert [category["id"] for category in categories] == ["it_security_policy", "legal_exam", "cloud_101"]
    assert [module["id"] for module in categories[0]["modules"]] == ["password_security"]
    assert categories[0]["modules"][0]["questions"] == 2
    synthesized = categories[2]["modules"][0]
    # Two modules already placed, quiz index 2.
    assert synthesized["iconKey"] == catalog.icon_for(4)
    assert synthesized["theme"] == catalog.theme_for(4)
    assert synthesized["status"] == "Not Started"


def test_derivation_is_additive():
    quizzes = catalog.default_quizzes()

    derived = derive_module_categories(quizzes)

    module_ids = [module["id"] for category in derived for module in category["modules"]]
    assert sorted(module_ids) == sorted(quiz["id"] for quiz in quizzes)
    assert all(category["modules"] for category in derived)


def test_remote_data_wins_and_refreshes_cache(local_cache):
    remote = initial_payload()
    del remote["moduleCategories"]
    del remote["emailLog"]
    local_cache.save({**initial_payload(), "emailLog": [{"id": 1, "to": "demo", "subject": "s", "body": "b", "timestamp": "t"}]})

    result = asyncio.run(load_snapshot(StubClient(remote), local_cache))

    assert result.source == "remote"
    assert result.error is None
    assert result.snapshot.module_categories
    assert [email.subject for email in result.snapshot.email_log] == ["s"]
    assert local_cache.load()["moduleCategories"]


def test_falls_back_to_cache_when_remote_fails(local_cache):
    cached = initial_payload()
    cached["users"] = cached["users"][:1]
    local_cache.save(cached)

    result = asyncio.run(load_snapshot(StubClient(error=ApiError("KV store is not configured.", 500)), local_cache))

    assert result.source == "cache"
    assert result.error is None
    assert [user.username for user in result.snapshot.users] == ["demo"]


def test_falls_back_to_defaults_with_generic_message(local_cache):
    result = asyncio.run(load_snapshot(StubClient(error=ApiError("offline")), local_cache))

    assert result.source == "defaults"
    assert result.error == LOAD_FAILED_MESSAGE
    assert len(result.snapshot.users) == 6


def test_invalid_remote_payload_is_not_cached(local_cache):
    bad = {"users": [{"id": "not-a-number"}], "quizzes": []}

    result = asyncio.run(load_snapshot(StubClient(bad), local_cache))

    assert result.source == "defaults"
    assert local_cache.load() is None
