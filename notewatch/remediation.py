"""Builds the upstream ToDo filed when a note check finds issues."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from notewatch.analysis import Issue
from notewatch.time_utils import parse_timestamp

ASSIGNEE_ROLES = ("SECONDARY_PROVIDER", "STAFF")
CARE_TEAM_ROLES = ("PROVIDER", "STAFF", "SECONDARY_PROVIDER")


@dataclass(slots=True)
class TaskRequest:
    subject: str
    description: str
    patient_id: str
    patient_name: str
    assignee: Optional[str] = None
    watchers: List[str] = field(default_factory=list)
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_payload(self) -> Dict[str, Any]:
        users = []
        if self.assignee:
            users.append({"userId": self.assignee, "userType": "ASSIGNEE"})
        users.extend({"userId": watcher, "userType": "WATCHER"} for watcher in self.watchers)
        return {
            "reminderEnabled": False,
            "subject": self.subject,
            "users": users,
            "description": self.description,
            "id": self.task_id,
            "links": [
                {
                    "order": 0,
                    "linkEntityId": self.patient_id,
                    "description": self.patient_name,
                    "linkType": "PATIENT",
                }
            ],
        }


def task_subject(date_of_service: Optional[str], time_zone: str, fallback: Optional[datetime] = None) -> str:
    """``Note Deficiencies - MM/DD/YYYY`` in the clinic's local calendar."""

    moment = parse_timestamp(date_of_service) or fallback
    if moment is None:
        return "Note Deficiencies"
    local = moment.astimezone(ZoneInfo(time_zone))
    return f"Note Deficiencies - {local.strftime('%m/%d/%Y')}"


def task_description(issues: Sequence[Issue]) -> str:
    lines = ["The following issues were found in the clinical note:\n\n"]
    for index, issue in enumerate(issues, start=1):
        lines.append(f"{index}. {issue.assessment}:\n")
        lines.append(f"   Issue: {issue.issue.replace('_', ' ')}\n")
        if issue.details.hpi:
            lines.append(f"   HPI: {issue.details.hpi}\n")
        lines.append(f"   A&P: {issue.details.assessment_and_plan or ''}\n")
        lines.append(f"   Suggested Correction: {issue.details.correction or ''}\n\n")
    return "".join(lines)


def pick_care_team(roles: Sequence[Mapping[str, Any]]) -> tuple[Optional[str], List[str]]:
    """Return ``(assignee, watchers)`` from an encounter's role list.

    The first active secondary provider or staff member is assigned; every
    other active provider, staff or secondary provider watches.  Without one
    the first active provider is assigned instead.
    """

    assignee: Optional[str] = None
    watchers: List[str] = []
    seen = set()
    for role in roles:
        user_id = role.get("providerId")
        kind = role.get("encounterRoleType")
        if not role.get("active") or not user_id or user_id in seen:
            continue
        if kind in ASSIGNEE_ROLES and assignee is None:
            assignee = user_id
            seen.add(user_id)
        elif kind in CARE_TEAM_ROLES:
            watchers.append(user_id)
            seen.add(user_id)

    if assignee is None:
        provider = next(
            (
                role.get("providerId")
                for role in roles
                if role.get("active") and role.get("providerId") and role.get("encounterRoleType") == "PROVIDER"
            ),
            None,
        )
        if provider is not None:
            assignee = provider
            # The provider leaves the watcher list once assigned.
            watchers = [watcher for watcher in watchers if watcher != provider]
    return assignee, watchers


def build_task(
    *,
    patient_id: str,
    patient_name: str,
    date_of_service: Optional[str],
    issues: Sequence[Issue],
    care_team: Sequence[Mapping[str, Any]],
    time_zone: str,
    fallback_date: Optional[datetime] = None,
) -> TaskRequest:
    assignee, watchers = pick_care_team(care_team)
    return TaskRequest(
        subject=task_subject(date_of_service, time_zone, fallback_date),
        description=task_description(issues),
        patient_id=patient_id,
        patient_name=patient_name,
        assignee=assignee,
        watchers=watchers,
    )


__all__ = ["TaskRequest", "build_task", "pick_care_team", "task_description", "task_subject"]
