"""Vital-signs carryforward sweep.

Each run lists today's encounters, and for every newly staffed adult
established patient copies the most recent height and weight from the
patient's history onto the current encounter.  ``processed_vital_signs`` is
the idempotency guard: once an encounter has a row it is never touched again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import structlog

from notewatch.errors import AuthError, Fatal, NotewatchError, NotFound, Transient
from notewatch.gateway import Encounter, EncounterGateway, VitalSigns, day_filter
from notewatch.observability import VITALS_CARRIED_FORWARD
from notewatch.payloads import VitalsPayload
from notewatch.queue import Job
from notewatch.store import RecordStore
from notewatch.time_utils import Clock, age_in_years, utc_now
from notewatch.tokens import TokenManager

logger = structlog.get_logger(__name__)

SWEEP_STATUSES = ("READY_FOR_STAFF", "WITH_STAFF")
CARRYFORWARD_STATUS = "READY_FOR_STAFF"
ADULT_AGE = 18

INCHES_TO_METRES = 0.0254
POUNDS_TO_KG = 0.453592


def carryforward_skip_reason(encounter: Encounter, today: datetime) -> Optional[str]:
    """Return why ``encounter`` gets no carryforward, or ``None`` when eligible."""

    if encounter.status != CARRYFORWARD_STATUS:
        return f"status {encounter.status or 'unknown'}"
    if not encounter.established_patient:
        return "new patient"
    if not encounter.date_of_birth:
        return "no date of birth"
    age = age_in_years(encounter.date_of_birth, today)
    if age is None:
        return "unparseable date of birth"
    if age < ADULT_AGE:
        return f"patient is {age}"
    return None


def calculate_bmi(vitals: VitalSigns) -> Optional[float]:
    height = vitals.height
    weight = vitals.weight
    if not height or not weight:
        return None
    metres = height * INCHES_TO_METRES if vitals.height_unit == "IN" else height / 100
    kilograms = weight * POUNDS_TO_KG if vitals.weight_unit == "LB_OZ" else weight
    return round(kilograms / (metres * metres), 2)


@dataclass(slots=True)
class CarryforwardOutcome:
    encounter_id: str
    success: bool
    message: str
    source_encounter_id: Optional[str] = None


class VitalsCarryforwardJob:
    """Handler for the vital-signs queue."""

    def __init__(
        self,
        *,
        tokens: TokenManager,
        gateway: EncounterGateway,
        records: RecordStore,
        clinic_id: str,
        practice_id: str,
        time_zone: str = "America/Detroit",
        clock: Clock = utc_now,
    ) -> None:
        self.tokens = tokens
        self.gateway = gateway
        self.records = records
        self.clinic_id = clinic_id
        self.practice_id = practice_id
        self.time_zone = time_zone
        self.clock = clock

    def _local_now(self) -> datetime:
        return self.clock().astimezone(ZoneInfo(self.time_zone))

    def run(self, payload: VitalsPayload) -> Dict[str, Any]:
        self.tokens.get_valid_token()
        local_now = self._local_now()
        encounters = self.gateway.list_encounters(
            day_filter(
                local_now.date(),
                clinic_id=self.clinic_id,
                practice_id=self.practice_id,
                time_zone=self.time_zone,
            )
        )
        summary = {"listed": len(encounters), "processed": 0, "successful": 0, "failed": 0, "skipped": 0}
        for encounter in encounters:
            if encounter.status not in SWEEP_STATUSES:
                continue
            if self.records.has_processed_vitals(encounter.id):
                continue
            reason = carryforward_skip_reason(encounter, local_now)
            if reason is not None:
                summary["skipped"] += 1
                logger.debug("vitals_not_eligible", encounter_id=encounter.id, reason=reason)
                continue
            summary["processed"] += 1
            try:
                outcome = self.carry_forward(encounter)
            except AuthError:
                raise
            except Transient as exc:
                # Left unmarked so the next sweep tries again.
                summary["failed"] += 1
                logger.warning("vitals_carryforward_deferred", encounter_id=encounter.id, error=str(exc))
                continue
            summary["successful" if outcome.success else "failed"] += 1
        logger.info("vitals_sweep_completed", **summary)
        return summary

    def __call__(self, payload: VitalsPayload, job: Optional[Job] = None) -> Dict[str, Any]:
        return self.run(payload)

    # ------------------------------------------------------------------

    def _latest_measurements(
        self, encounter: Encounter, history: Sequence[Encounter]
    ) -> Optional[Tuple[Encounter, VitalSigns]]:
        for previous in history:
            try:
                vitals = self.gateway.get_vital_signs(previous.id, encounter.patient_id)
            except (NotFound, Fatal) as exc:
                logger.info("historical_vitals_unavailable", encounter_id=previous.id, error=str(exc))
                continue
            if vitals is not None and vitals.has_height_and_weight():
                return previous, vitals
        return None

    def _record(
        self,
        encounter: Encounter,
        success: bool,
        message: str,
        source: Optional[VitalSigns] = None,
        source_encounter_id: Optional[str] = None,
    ) -> CarryforwardOutcome:
        self.records.mark_vitals_processed(
            encounter.id,
            encounter.patient_id or None,
            success=success,
            source_encounter_id=source_encounter_id,
            height_value=source.height1 if source else None,
            weight_value=source.weight1 if source else None,
            height_unit=source.height_unit if source else None,
            weight_unit=source.weight_unit if source else None,
            error_message=None if success else message,
        )
        VITALS_CARRIED_FORWARD.labels(outcome="success" if success else "failure").inc()
        logger.info(
            "vitals_carryforward_recorded",
            encounter_id=encounter.id,
            success=success,
            message=message,
            source_encounter_id=source_encounter_id,
        )
        return CarryforwardOutcome(encounter.id, success, message, source_encounter_id)

    def carry_forward(self, encounter: Encounter) -> CarryforwardOutcome:
        """Copy the latest historical height and weight onto ``encounter``.

        Every outcome except a transient upstream failure is recorded, so an
        encounter is attempted at most once.
        """

        if self.records.has_processed_vitals(encounter.id):
            return CarryforwardOutcome(encounter.id, False, "already processed")
        try:
            history = self.gateway.get_historical_encounters(encounter.patient_id, exclude_encounter_id=encounter.id)
            if not history:
                return self._record(encounter, False, "No historical encounters found")
            found = self._latest_measurements(encounter, history)
            if found is None:
                return self._record(encounter, False, "No historical vital signs found")
            source_encounter, source = found

            current = self.gateway.get_vital_signs(encounter.id, encounter.patient_id)
            if current is None:
                return self._record(
                    encounter,
                    False,
                    "Current encounter has no vital signs record",
                    source_encounter_id=source_encounter.id,
                )

            for attr in ("height1", "height2", "height_unit", "weight1", "weight2", "weight_unit"):
                value = getattr(source, attr)
                if value:
                    setattr(current, attr, value)
            bmi = calculate_bmi(source)
            if bmi is not None:
                current.bmi = bmi

            self.gateway.update_vital_signs(current, encounter.patient_id)
        except (AuthError, Transient):
            raise
        except NotewatchError as exc:
            return self._record(encounter, False, f"Error: {exc}")
        return self._record(
            encounter,
            True,
            "Vital signs carried forward",
            source=source,
            source_encounter_id=source_encounter.id,
        )

    def process_encounter(self, encounter_id: str, patient_id: Optional[str] = None) -> CarryforwardOutcome:
        """Run the carryforward for one encounter on operator request."""

        self.tokens.get_valid_token()
        encounter = Encounter.from_filter_payload(self.gateway.get_encounter(encounter_id, patient_id))
        if self.records.has_processed_vitals(encounter.id):
            return CarryforwardOutcome(encounter.id, False, "already processed")
        reason = carryforward_skip_reason(encounter, self._local_now())
        if reason is not None:
            return CarryforwardOutcome(encounter.id, False, f"not eligible: {reason}")
        return self.carry_forward(encounter)


__all__ = [
    "VitalsCarryforwardJob",
    "CarryforwardOutcome",
    "carryforward_skip_reason",
    "calculate_bmi",
    "SWEEP_STATUSES",
]
