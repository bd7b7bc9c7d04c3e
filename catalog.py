"""Built-in defaults: seed users, settings, the default quiz catalog and category layout."""

from __future__ import annotations

import copy
import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

PASSING_PERCENTAGE = 70

DEFAULT_QUIZZES_PATH = Path(__file__).resolve().parent / "default_quizzes.json"

ICON_KEYS = (
    "Key",
    "Download",
    "AtSymbol",
    "Device",
    "Lock",
    "Warning",
    "ChatBubble",
    "Check",
    "Home",
    "Clock",
)

THEMES = (
    {"iconBg": "bg-rose-100", "iconColor": "text-rose-500"},
    {"iconBg": "bg-emerald-100", "iconColor": "text-emerald-500"},
    {"iconBg": "bg-amber-100", "iconColor": "text-amber-500"},
    {"iconBg": "bg-indigo-100", "iconColor": "text-indigo-500"},
    {"iconBg": "bg-cyan-100", "iconColor": "text-cyan-500"},
    {"iconBg": "bg-orange-100", "iconColor": "text-orange-500"},
    {"iconBg": "bg-teal-100", "iconColor": "text-teal-500"},
    {"iconBg": "bg-lime-100", "iconColor": "text-lime-500"},
    {"iconBg": "bg-fuchsia-100", "iconColor": "text-fuchsia-500"},
    {"iconBg": "bg-sky-100", "iconColor": "text-sky-500"},
)

_ALL_EXAMS = [
    "it_security_policy",
    "hr_exam",
    "it_policy_exam",
    "server_exam",
    "operation_exam",
    "legal_exam",
    "data_analyst_exam",
    "it_developer_policy",
    "finance_policy_exam",
]


def _seed_user(user_id: int, full_name: str, username: str, password: str, exams: List[str], role: str = "user") -> Dict[str, Any]:
    return {
        "id": user_id,
        "fullName": full_name,
        "username": username,
        "password": password,
        "trainingStatus": "not-started",
        "lastScore": None,
        "role": role,
        "assignedExams": exams,
        "answers": [],
        "moduleProgress": {},
    }


DEFAULT_USERS: List[Dict[str, Any]] = [
    _seed_user(1, "Demo User", "demo", "demo", list(_ALL_EXAMS)),
    _seed_user(2, "Dev Lead", "dev", "dev", ["it_security_policy", "it_developer_policy"]),
    _seed_user(3, "Sys Admin", "server", "server", ["it_security_policy", "server_exam", "it_policy_exam", "operation_exam"]),
    _seed_user(4, "IT Support", "it", "it", ["it_security_policy", "it_policy_exam"]),
    _seed_user(5, "Data Analyst", "analyst", "analyst", ["it_security_policy", "data_analyst_exam"]),
    _seed_user(999, "Default Admin", "admin", "dqadm", [], role="admin"),
]

DEFAULT_SETTINGS: Dict[str, Any] = {
    "githubOwner": "",
    "githubRepo": "",
    "githubPath": "data.json",
    "githubPat": "",
    "logo": None,
    "companyFullName": "Cyber Security Training Consortium",
    "signature1": None,
    "signature1Name": "Dan Houser",
    "signature1Title": "Chairperson",
    "signature2": None,
    "signature2Name": "Laurie-Anne Bourdain",
    "signature2Title": "Secretary",
    "courseName": "Certified Cyber Security Professional",
    "certificationBodyText": (
        "Having met all of the certification requirements, adoption of the Code of Ethics, "
        "and successful performance on the required competency examination, subject to "
        "recertification every three years, this individual is entitled to all of the rights "
        "and privileges associated with this designation."
    ),
    "certificationSeal": None,
    "certificationCycleYears": 3,
}

# Default exam folders. Each entry lists (module id, icon key, theme index);
# modules whose quiz does not exist are dropped when the layout is applied.
DEFAULT_CATEGORY_LAYOUT: List[Dict[str, Any]] = [
    {
        "id": "it_security_policy",
        "title": "IT Security Policy",
        "modules": [
            ("password_security", "Key", 0),
            ("data_protection_handling", "Download", 1),
            ("email_communication_security", "AtSymbol", 2),
            ("device_internet_usage", "Device", 3),
            ("physical_security", "Lock", 4),
            ("incident_reporting", "Warning", 5),
            ("social_engineering_awareness", "ChatBubble", 6),
            ("acceptable_use_compliance", "Check", 7),
            ("remote_work_byod", "Home", 8),
            ("backup_recovery_awareness", "Clock", 9),
        ],
    },
    {
        "id": "it_developer_policy",
        "title": "IT Developer Policy",
        "modules": [
            ("dev_secure_coding", "Key", 3),
            ("dev_api_security", "Lock", 4),
            ("dev_dependency_management", "Download", 5),
            ("dev_data_handling", "Device", 6),
        ],
    },
    {
        "id": "hr_exam",
        "title": "HR Policy Exam",
        "modules": [
            ("hr_recruitment_onboarding", "Home", 0),
            ("hr_attendance_leave", "Clock", 1),
            ("hr_workplace_conduct", "Check", 2),
            ("hr_benefits_payroll", "Download", 3),
            ("hr_performance_appraisal", "ChatBubble", 4),
            ("hr_grievance_resolution", "Warning", 5),
            ("hr_exit_clearance", "Lock", 6),
        ],
    },
    {"id": "it_policy_exam", "title": "IT Policy Exam", "modules": [("it_policy_exam", "Device", 7)]},
    {"id": "server_exam", "title": "Server Exam", "modules": [("server_exam", "Lock", 8)]},
    {"id": "operation_exam", "title": "Operation Exam", "modules": [("operation_exam", "Check", 9)]},
    {"id": "legal_exam", "title": "Legal Exam", "modules": [("legal_exam", "Warning", 0)]},
    {"id": "data_analyst_exam", "title": "Data Analyst Exam", "modules": [("data_analyst_exam", "Download", 1)]},
    {"id": "finance_policy_exam", "title": "Finance Policy Exam", "modules": [("finance_policy_exam", "AtSymbol", 2)]},
]


def theme_for(position: int) -> Dict[str, str]:
    return dict(THEMES[position % len(THEMES)])


def icon_for(position: int) -> str:
    return ICON_KEYS[position % len(ICON_KEYS)]


@lru_cache(maxsize=1)
def _load_default_quizzes(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, list):
        raise ValueError("Default quiz catalog root must be a JSON list")
    return json.dumps(raw)


def default_quizzes() -> List[Dict[str, Any]]:
    """Fresh copy of the default question catalog."""
    return json.loads(_load_default_quizzes(str(DEFAULT_QUIZZES_PATH)))


def default_users() -> List[Dict[str, Any]]:
    return copy.deepcopy(DEFAULT_USERS)


def default_settings() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_SETTINGS)
