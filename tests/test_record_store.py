import pytest

from record_store import RecordStore, RecordValidationError, completion_score, slugify
from schemas import ModuleStatus

DEMO = 1
ANALYST = 5


def _question(category, text="What is 2 + 2?", answer="4"):
    return {"category": category, "question": text, "options": ["3", "4", "5"], "correctAnswer": answer}


def _changes(store):
    seen = []
    store.subscribe(lambda keys, urgent: seen.append((set(keys), urgent)))
    return seen


def _module(store, module_id):
    for category in store.module_categories:
        for module in category.modules:
            if module.id == module_id:
                return module
    return None


def _answers_for(store, quiz_id, correct=True):
    quiz = store.get_quiz(quiz_id)
    answers = []
    for question in quiz.questions:
        wrong = next(option for option in question.options if option != question.correct_answer)
        selected = question.correct_answer if correct else wrong
        answers.append(
            {
                "questionId": question.id,
                "questionText": question.question,
                "selectedAnswer": selected,
                "correctAnswer": question.correct_answer,
                "isCorrect": correct,
            }
        )
    return answers


def test_slugify_and_score_rounding():
    assert slugify("  Cloud  Security Basics ") == "cloud_security_basics"
    assert completion_score(7, 10) == 70
    assert completion_score(2, 3) == 67
    assert completion_score(1, 8) == 13  # 12.5 rounds up
    assert completion_score(0, 0) == 0


def test_add_question_recomputes_module_count_and_notifies(record_store):
    seen = _changes(record_store)
    before = _module(record_store, "legal_exam").questions

    question = record_store.add_question(_question("Legal Exam"))

    assert _module(record_store, "legal_exam").questions == before + 1 == 11
    assert question.category == "Legal Exam"
    assert question.id == 1_700_000_000_000
    assert seen == [({"quizzes", "moduleCategories"}, False)]


def test_question_ids_stay_unique_within_one_millisecond(record_store):
    first = record_store.add_question(_question("Legal Exam"))
    second = record_store.add_question(_question("Legal Exam", text="Again?"))

    assert second.id == first.id + 1


def test_add_question_rejects_unknown_quiz_and_bad_answer(record_store):
    snapshot_before = record_store.snapshot_payload()
    with pytest.raises(RecordValidationError):
        record_store.add_question(_question("No Such Quiz"))
    with pytest.raises(RecordValidationError):
        record_store.add_question(_question("Legal Exam", answer="42"))
    assert record_store.snapshot_payload() == snapshot_before


def test_delete_question_updates_count(record_store):
    quiz = record_store.get_quiz("server_exam")
    record_store.delete_question(quiz.questions[0].id)

    assert _module(record_store, "server_exam").questions == 0
    with pytest.raises(RecordValidationError):
        record_store.delete_question(123456)


def test_update_question_keeps_owner_quiz(record_store):
    original = record_store.get_quiz("server_exam").questions[0]
    changed = original.to_payload()
    changed["question"] = "Reworded?"
    changed["category"] = "Legal Exam"

    updated = record_store.update_question(changed)

    assert updated.category == "Server Exam"
    assert record_store.get_quiz("server_exam").questions[0].question == "Reworded?"
    assert len(record_store.get_quiz("legal_exam").questions) == 10


def test_create_exam_category_builds_quiz_and_folder(record_store):
    new_id = record_store.create_exam_category("Cloud Basics")

    assert new_id == "cloud_basics_1700000000000"
    assert record_store.get_quiz(new_id).questions == []
    category = record_store.get_category(new_id)
    assert [module.id for module in category.modules] == [new_id]
    assert category.modules[0].questions == 0


def test_duplicate_or_empty_category_name_rejected_without_mutation(record_store):
    quizzes_before = len(record_store.quizzes)
    with pytest.raises(RecordValidationError):
        record_store.create_exam_category("legal exam")
    with pytest.raises(RecordValidationError):
        record_store.create_exam_category("   ")
    with pytest.raises(RecordValidationError):
        record_store.add_question_to_new_category(_question("x"), "Server Exam")
    assert len(record_store.quizzes) == quizzes_before


def test_edit_exam_category_renames_quiz_module_and_questions(record_store):
    record_store.edit_exam_category("legal_exam", "Legal & Compliance")

    assert record_store.get_category("legal_exam").title == "Legal & Compliance"
    assert _module(record_store, "legal_exam").title == "Legal & Compliance"
    quiz = record_store.get_quiz("legal_exam")
    assert quiz.name == "Legal & Compliance"
    assert {question.category for question in quiz.questions} == {"Legal & Compliance"}
    # Questions can still be added by the new name.
    record_store.add_question(_question("Legal & Compliance"))


def test_delete_exam_category_cascades_to_users(record_store):
    demo = record_store.get_user(DEMO)
    demo.module_progress["legal_exam"] = ModuleStatus.COMPLETED
    demo.module_progress["server_exam"] = ModuleStatus.IN_PROGRESS
    seen = _changes(record_store)

    record_store.delete_exam_category("legal_exam")

    assert record_store.get_category("legal_exam") is None
    assert record_store.get_quiz("legal_exam") is None
    assert "legal_exam" not in demo.assigned_exams
    assert "legal_exam" not in demo.module_progress
    assert demo.module_progress["server_exam"] == ModuleStatus.IN_PROGRESS
    assert seen == [({"users", "quizzes", "moduleCategories"}, False)]


def test_add_question_to_new_subtopic_appends_module_to_parent(record_store):
    question = record_store.add_question_to_new_subtopic(_question("ignored"), "Cookie Law", "legal_exam")

    category = record_store.get_category("legal_exam")
    assert [module.title for module in category.modules] == ["Legal Exam", "Cookie Law"]
    new_module = category.modules[-1]
    assert new_module.questions == 1
    assert new_module.sub_category == "Cookie Law"
    assert question.category == "Cookie Law"
    with pytest.raises(RecordValidationError):
        record_store.add_question_to_new_subtopic(_question("x"), "Other", "missing_folder")


def test_add_user_rejects_duplicate_username_and_is_urgent(record_store):
    seen = _changes(record_store)

    user = record_store.add_user({"fullName": "New Hire", "username": "newbie", "password": "pw"})

    assert user.id == 1_700_000_000_000
    assert seen == [({"users"}, True)]
    with pytest.raises(RecordValidationError, match="Username already exists."):
        record_store.add_user({"fullName": "Dup", "username": "demo", "password": "pw"})
    assert len(record_store.users) == 7


def test_update_and_delete_user(record_store):
    demo = record_store.get_user(DEMO).to_payload()
    demo["fullName"] = "Demo Renamed"
    record_store.update_user(demo)
    assert record_store.get_user(DEMO).full_name == "Demo Renamed"

    demo["username"] = "admin"
    with pytest.raises(RecordValidationError):
        record_store.update_user(demo)

    record_store.delete_user(DEMO)
    assert record_store.get_user(DEMO) is None


def test_send_notification_prepends_to_log(record_store):
    first = record_store.send_notification("demo", "One", "body")
    second = record_store.send_notification("demo", "Two", "body")

    assert [email.subject for email in record_store.email_log] == ["Two", "One"]
    assert second.id != first.id


def test_update_settings_accepts_wire_and_attribute_names(record_store):
    record_store.update_settings({"githubOwner": "acme"}, github_repo="training", themeColor="blue")

    settings = record_store.settings
    assert settings.github_owner == "acme"
    assert settings.github_repo == "training"
    assert settings.to_payload()["themeColor"] == "blue"


def test_visible_categories_follow_assignment_and_progress(record_store):
    record_store.set_module_status(ANALYST, "data_analyst_exam", ModuleStatus.IN_PROGRESS)

    visible = record_store.visible_categories(ANALYST)

    assert [category.id for category in visible] == ["it_security_policy", "data_analyst_exam"]
    statuses = {module.id: module.status for category in visible for module in category.modules}
    assert statuses["data_analyst_exam"] == ModuleStatus.IN_PROGRESS
    assert statuses["password_security"] == ModuleStatus.NOT_STARTED
    assert record_store.get_user(ANALYST).training_status == "in-progress"
    with pytest.raises(RecordValidationError):
        record_store.set_module_status(ANALYST, "legal_exam", ModuleStatus.COMPLETED)


def test_start_quiz_on_empty_module_completes_it(record_store):
    empty_id = record_store.create_exam_category("Empty Folder")
    record_store.get_user(ANALYST).assigned_exams.append(empty_id)

    assert record_store.start_quiz(ANALYST, empty_id) is None
    assert record_store.get_user(ANALYST).module_progress[empty_id] == ModuleStatus.COMPLETED
    assert record_store.start_quiz(ANALYST, "data_analyst_exam").id == "data_analyst_exam"


def _finish_all(store, user_id, wrong_quizzes=()):
    for category in store.visible_categories(user_id):
        for module in category.modules:
            store.start_quiz(user_id, module.id)
            store.complete_quiz(user_id, module.id, _answers_for(store, module.id, correct=module.id not in wrong_quizzes))


def test_partial_completion_does_not_grade(record_store):
    store = record_store
    store.start_quiz(ANALYST, "data_analyst_exam")
    store.complete_quiz(ANALYST, "data_analyst_exam", _answers_for(store, "data_analyst_exam"))

    user = store.get_user(ANALYST)
    assert user.training_status == "in-progress"
    assert user.last_score is None


def test_completing_all_modules_passes_at_threshold_and_sends_email(record_store):
    store = record_store
    # Analyst has 13 questions; 3 wrong leaves 10/13, 76.9%.
    seen = _changes(store)
    _finish_all(store, ANALYST, wrong_quizzes={"password_security", "email_communication_security"})

    user = store.get_user(ANALYST)
    assert user.training_status == "passed"
    assert user.last_score == 77
    assert user.submission_date
    assert store.email_log[0].to == "analyst"
    assert store.email_log[0].subject == "Congratulations on Passing Your Training!"
    assert ({"users", "emailLog"}, True) in seen


def test_score_just_below_threshold_fails_without_email(record_store):
    store = record_store
    _finish_all(store, ANALYST, wrong_quizzes={"password_security", "data_protection_handling"})

    user = store.get_user(ANALYST)
    # 9 of 13 correct is 69.2%.
    assert user.last_score == 69
    assert user.training_status == "failed"
    assert store.email_log == []


def test_graded_user_is_not_regraded_and_reset_clears_progress(record_store):
    store = record_store
    _finish_all(store, ANALYST)
    assert store.get_user(ANALYST).training_status == "passed"
    assert store.evaluate_completion(ANALYST) is None

    user = store.reset_progress(ANALYST)
    assert user.training_status == "not-started"
    assert user.module_progress == {}
    assert user.answers == []
    assert user.last_score is None


def test_resubmitting_a_quiz_replaces_earlier_answers(record_store):
    store = record_store
    store.complete_quiz(ANALYST, "password_security", _answers_for(store, "password_security", correct=False))
    store.complete_quiz(ANALYST, "password_security", _answers_for(store, "password_security", correct=True))

    answers = store.get_user(ANALYST).answers
    assert len(answers) == 2
    assert all(answer.is_correct for answer in answers)


def test_partitions_and_snapshot_payload(record_store):
    record_store.update_settings(githubPat="secret")

    assert set(record_store.partitions()) == {"users", "quizzes", "moduleCategories", "settings"}
    assert "githubPat" not in record_store.snapshot_payload(include_credentials=False)["settings"]
    assert record_store.snapshot_payload()["settings"]["githubPat"] == "secret"


def test_import_snapshot_keeps_token_and_derives_categories(record_store):
    record_store.update_settings(githubPat="secret")
    exported = record_store.snapshot_payload(include_credentials=False)
    del exported["moduleCategories"]
    seen = _changes(record_store)

    record_store.import_snapshot(exported)

    assert record_store.settings.github_pat == "secret"
    assert record_store.get_category("legal_exam") is not None
    assert seen and seen[0][0] >= {"users", "quizzes", "moduleCategories", "settings"}


def test_import_snapshot_rejects_bad_references_without_mutation(record_store):
    payload = record_store.snapshot_payload()
    payload["moduleCategories"][0]["modules"][0]["id"] = "ghost"
    before = record_store.snapshot_payload()

    with pytest.raises(RecordValidationError, match="ghost"):
        record_store.import_snapshot(payload)

    duplicate = record_store.snapshot_payload()
    duplicate["quizzes"].append(dict(duplicate["quizzes"][0], id="copy"))
    with pytest.raises(RecordValidationError, match="Duplicate quiz names"):
        record_store.import_snapshot(duplicate)

    with pytest.raises(RecordValidationError):
        record_store.import_snapshot({"users": "nope", "quizzes": []})
    assert record_store.snapshot_payload() == before


def test_default_store_builds_from_catalog(clock):
    store = RecordStore(clock=clock)

    assert len(store.users) == 6
    assert store.get_category("hr_exam") is not None
