"""Analysis results and the default OpenAI-backed note analyzer.

The check job treats analysis as an opaque callable ``analyze(text) ->
AnalysisResult``.  :class:`OpenAIAnalyzer` is the production implementation;
tests pass plain functions.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field

from notewatch.errors import AnalysisError

logger = structlog.get_logger(__name__)

CHECK_TYPES = ("chronicity-check", "hpi-structure-check", "plan-check", "accuracy-check")

_OUTPUT_CONTRACT = (
    'Return {"status": "ok", "reason": "..."} if correct. Otherwise return '
    '{"status": "corrections_needed", "summary": "...", "issues": [{"assessment": "...", '
    '"issue": "chronicity_mismatch|no_explicit_plan|unclear_documentation", '
    '"details": {"HPI": "...", "A&P": "...", "correction": "..."}}]}. Respond with JSON only.'
)

PROMPTS: Dict[str, str] = {
    "chronicity-check": (
        "You are a dermatology medical coder. Check if the chronicity of every diagnosis in the A&P "
        "matches what is documented in the HPI. " + _OUTPUT_CONTRACT
    ),
    "hpi-structure-check": (
        "You are a dermatology medical coder. Check if the HPI structure is correct for billing. "
        + _OUTPUT_CONTRACT
    ),
    "plan-check": (
        "You are a dermatology medical coder. Check if every assessment in the A&P has a documented plan. "
        + _OUTPUT_CONTRACT
    ),
    "accuracy-check": (
        "You are a dermatology medical coder. Check if the A&P aligns with the HPI. " + _OUTPUT_CONTRACT
    ),
}

_LEGACY_ISSUE_KINDS = {
    "chronicity_mismatch": "chronicity_mismatch",
    "missing_plan": "no_explicit_plan",
}


class IssueDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    hpi: Optional[str] = Field(default=None, alias="HPI")
    assessment_and_plan: Optional[str] = Field(default=None, alias="A&P")
    correction: Optional[str] = None


class Issue(BaseModel):
    assessment: str
    issue: str
    details: IssueDetails = Field(default_factory=IssueDetails)


class AnalysisResult(BaseModel):
    """Normalised outcome of one or more note checks."""

    status: Literal["ok", "corrections_needed"]
    summary: Optional[str] = None
    reason: Optional[str] = None
    issues: List[Issue] = Field(default_factory=list)

    @property
    def issues_found(self) -> bool:
        return self.status == "corrections_needed" and bool(self.issues)

    def to_record(self) -> Dict[str, Any]:
        """Serialise with the upstream field names for persistence."""

        data = self.model_dump(by_alias=True, exclude_none=True)
        data["issuesFound"] = self.issues_found
        return data


Analyzer = Callable[[str], AnalysisResult]


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_STRAY_COLON = re.compile(r'"status":\s*:(\w+)')


def extract_json(text: str) -> Dict[str, Any]:
    """Parse the JSON object embedded in ``text``.

    Model output often wraps the object in prose or code fences; everything
    outside the first ``{`` and the last ``}`` is discarded.
    """

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or start > end:
        raise ValueError("No JSON object found in response")
    snippet = _STRAY_COLON.sub(r'"status": "\1"', text[start : end + 1])
    parsed = json.loads(snippet)
    if not isinstance(parsed, dict):
        raise ValueError("Response JSON is not an object")
    return parsed


def _join(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value)


def _normalize_issue(raw: Mapping[str, Any]) -> Optional[Issue]:
    if raw.get("type") and raw.get("diagnoses") and raw.get("details"):
        kind = str(raw["type"])
        diagnoses = _join(raw["diagnoses"])
        details = raw["details"]
        return Issue(
            assessment=diagnoses,
            issue=_LEGACY_ISSUE_KINDS.get(kind, "unclear_documentation"),
            details=IssueDetails(
                assessment_and_plan=details if isinstance(details, str) else json.dumps(details),
                correction=f"Review and correct the {kind} for: {diagnoses}",
            ),
        )
    if raw.get("assessment") and raw.get("issue") and isinstance(raw.get("details"), Mapping):
        return Issue.model_validate(raw)
    return None


def normalize_response(response: Mapping[str, Any]) -> AnalysisResult:
    """Coerce a model's JSON answer into an :class:`AnalysisResult`."""

    status = str(response.get("status") or "").lstrip(":")
    if status == "ok":
        return AnalysisResult(status="ok", reason=response.get("reason") or None)

    issues: List[Issue] = []
    raw_issues = response.get("issues")
    if isinstance(raw_issues, list):
        for raw in raw_issues:
            if isinstance(raw, Mapping):
                issue = _normalize_issue(raw)
                if issue is not None:
                    issues.append(issue)
    return AnalysisResult(
        status="corrections_needed",
        summary=response.get("summary") or f"Found {len(issues)} issue(s) requiring attention",
        issues=issues,
    )


def combine_results(results: Iterable[AnalysisResult]) -> AnalysisResult:
    """Merge per-check results into one; any issue makes the whole note need corrections."""

    issues: List[Issue] = []
    for result in results:
        if result.status == "corrections_needed":
            issues.extend(result.issues)
    if not issues:
        return AnalysisResult(status="ok", reason="All checks passed")
    kinds = list(dict.fromkeys(issue.issue for issue in issues))
    plural = "s" if len(issues) > 1 else ""
    return AnalysisResult(
        status="corrections_needed",
        summary=f"Found {len(issues)} issue{plural} across multiple checks: {', '.join(kinds)}",
        issues=issues,
    )


def _vitals_issue(hpi: str, plan: str, correction: str) -> Issue:
    return Issue(
        assessment="Vital Signs",
        issue="unclear_documentation",
        details=IssueDetails(hpi=hpi, assessment_and_plan=plan, correction=correction),
    )


def check_vital_signs(sections: Sequence[Mapping[str, Any]]) -> AnalysisResult:
    """Local check that the OBJECTIVE section documents height and weight."""

    objective = next((s for s in sections if s.get("sectionType") == "OBJECTIVE"), None)
    if objective is None:
        return AnalysisResult(
            status="corrections_needed",
            summary="Missing OBJECTIVE section with vital signs",
            issues=[
                _vitals_issue(
                    "No OBJECTIVE section found",
                    "Vital signs section missing",
                    "Add OBJECTIVE section with height and weight measurements",
                )
            ],
        )
    item = next((i for i in objective.get("items") or [] if i.get("elementType") == "VITAL_SIGNS"), None)
    text = (item or {}).get("text") or ""
    if not text:
        return AnalysisResult(
            status="corrections_needed",
            summary="Missing vital signs documentation",
            issues=[
                _vitals_issue(
                    "Vital signs not documented",
                    "Height and weight required for billing",
                    "Add height and weight measurements to vital signs",
                )
            ],
        )
    lowered = text.lower()
    missing = []
    if "height" not in lowered and "ht" not in lowered:
        missing.append("height")
    if not any(token in lowered for token in ("weight", "wt", "lbs", "kg")):
        missing.append("weight")
    if missing:
        joined = " and ".join(missing)
        return AnalysisResult(
            status="corrections_needed",
            summary=f"Missing required vital signs: {joined}",
            issues=[
                _vitals_issue(
                    f"Current vital signs: {text}",
                    f"Missing {joined} measurements",
                    f"Add {joined} to vital signs documentation",
                )
            ],
        )
    return AnalysisResult(status="ok", reason="Height and weight are documented in vital signs")


# ---------------------------------------------------------------------------
# OpenAI analyzer
# ---------------------------------------------------------------------------


def _parse_failure(check_type: str) -> AnalysisResult:
    return AnalysisResult(
        status="corrections_needed",
        summary=f"{check_type} analysis failed to parse response properly",
        issues=[
            Issue(
                assessment="Analysis Error",
                issue="unclear_documentation",
                details=IssueDetails(
                    assessment_and_plan=f"Could not parse AI response for {check_type}",
                    correction="Manual review required",
                ),
            )
        ],
    )


class OpenAIAnalyzer:
    """Runs every compliance check against the chat completions API."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        *,
        client: Any = None,
        check_types: Sequence[str] = CHECK_TYPES,
        timeout: float = 60,
    ) -> None:
        self.model = model
        self.check_types = tuple(check_types)
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(timeout=self.timeout)
        return self._client

    def _complete(self, check_type: str, note_text: str) -> str:
        import openai

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": PROMPTS[check_type]},
                    {"role": "user", "content": f"Progress Note to analyze:\n{note_text}"},
                ],
                temperature=0,
            )
        except (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as exc:
            raise AnalysisError(f"{check_type} check failed: {exc}", transient=True) from exc
        except openai.OpenAIError as exc:
            raise AnalysisError(f"{check_type} check failed: {exc}") from exc
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AnalysisError(f"No response content received for {check_type}", transient=True)
        return content

    def run_check(self, check_type: str, note_text: str) -> AnalysisResult:
        content = self._complete(check_type, note_text)
        try:
            return normalize_response(extract_json(content))
        except ValueError:
            logger.warning("analysis_response_unparseable", check_type=check_type)
            return _parse_failure(check_type)

    def __call__(self, note_text: str) -> AnalysisResult:
        results = [self.run_check(check_type, note_text) for check_type in self.check_types]
        return combine_results(results)


__all__ = [
    "CHECK_TYPES",
    "Issue",
    "IssueDetails",
    "AnalysisResult",
    "Analyzer",
    "extract_json",
    "normalize_response",
    "combine_results",
    "check_vital_signs",
    "OpenAIAnalyzer",
]
