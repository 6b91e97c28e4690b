"""
Rule-based clinical risk scoring for a single vital snapshot.

Design principles:
- Pure and deterministic: same vital in, same result out, no I/O
- Total: missing readings are skipped and lower data quality, never raise
- Explainable: every point of score maps to a labelled finding and advice
"""

from dataclasses import dataclass

import structlog

from aura_core.domain.models import (
    DataQuality,
    FieldFlag,
    RiskFlags,
    RiskLevel,
    RiskResult,
    Vital,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class NormalRange:
    low: float
    high: float
    unit: str


NORMAL_RANGES: dict[str, NormalRange] = {
    "temp": NormalRange(low=36.1, high=37.5, unit="°C"),
    "hr": NormalRange(low=60, high=100, unit="bpm"),
    "spo2": NormalRange(low=95, high=100, unit="%"),
}

HIGH_RISK_THRESHOLD = 60
MODERATE_RISK_THRESHOLD = 30


@dataclass(frozen=True)
class Finding:
    """One triggered rule: which field, how many points, what to say."""

    field: str
    points: int
    label: str
    recommendation: str


TEMP_LOW = Finding(
    "temp", 10, "Temperature (Low)", "Low body temperature detected. Recheck placement."
)
TEMP_HIGH = Finding(
    "temp", 20, "Temperature (High)", "Elevated temperature detected. Monitor closely."
)
HR_SENSOR_ERROR = Finding(
    "hr", 40, "Heart Rate (Sensor Error)", "No pulse detected. Ensure proper finger placement."
)
HR_LOW = Finding("hr", 25, "Heart Rate (Low)", "Bradycardia suspected.")
HR_HIGH = Finding("hr", 25, "Heart Rate (High)", "Tachycardia suspected.")
SPO2_LOW = Finding(
    "spo2",
    35,
    "SpO₂ (Low)",
    "Low oxygen saturation detected. Immediate evaluation recommended.",
)

SUMMARIES: dict[RiskLevel, str] = {
    RiskLevel.LOW: "Vitals within acceptable physiological limits.",
    RiskLevel.MODERATE: "Some parameters outside normal range. Monitoring recommended.",
    RiskLevel.HIGH: "Critical deviations detected. Immediate medical attention advised.",
}


def _temperature_findings(temp: float | None) -> list[Finding]:
    if temp is None:
        return []
    findings = []
    if temp < NORMAL_RANGES["temp"].low:
        findings.append(TEMP_LOW)
    if temp > NORMAL_RANGES["temp"].high:
        findings.append(TEMP_HIGH)
    return findings


def _heart_rate_findings(hr: float | None) -> list[Finding]:
    if hr is None:
        return []
    # A zero reading means the sensor saw no pulse, not bradycardia
    if hr == 0:
        return [HR_SENSOR_ERROR]
    if hr < NORMAL_RANGES["hr"].low:
        return [HR_LOW]
    if hr > NORMAL_RANGES["hr"].high:
        return [HR_HIGH]
    return []


def _spo2_findings(spo2: float | None) -> list[Finding]:
    # Saturation above the ceiling carries no penalty
    if spo2 is not None and spo2 < NORMAL_RANGES["spo2"].low:
        return [SPO2_LOW]
    return []


def risk_level_for(score: int) -> RiskLevel:
    if score >= HIGH_RISK_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MODERATE_RISK_THRESHOLD:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


def data_quality_for(fields_present: int) -> DataQuality:
    if fields_present >= 3:
        return DataQuality.COMPLETE
    if fields_present == 2:
        return DataQuality.PARTIAL
    if fields_present == 1:
        return DataQuality.POOR
    return DataQuality.NO_DATA


def score(vital: Vital) -> RiskResult:
    """
    Classify a vital snapshot.

    Findings are evaluated temperature, then heart rate, then SpO₂, and both
    abnormal_fields and recommendations keep that order. The audio scalar is
    informational only and never contributes to the score.
    """
    findings = [
        *_temperature_findings(vital.temp),
        *_heart_rate_findings(vital.hr),
        *_spo2_findings(vital.spo2),
    ]

    risk_score = sum(finding.points for finding in findings)
    risk_level = risk_level_for(risk_score)
    abnormal = {finding.field for finding in findings}
    fields_present = sum(value is not None for value in (vital.temp, vital.hr, vital.spo2))

    result = RiskResult(
        risk_level=risk_level,
        risk_score=risk_score,
        summary=SUMMARIES[risk_level],
        recommendations=[finding.recommendation for finding in findings],
        abnormal_fields=[finding.label for finding in findings],
        flags=RiskFlags(
            temp=FieldFlag.ABNORMAL if "temp" in abnormal else FieldFlag.NORMAL,
            hr=FieldFlag.ABNORMAL if "hr" in abnormal else FieldFlag.NORMAL,
            spo2=FieldFlag.ABNORMAL if "spo2" in abnormal else FieldFlag.NORMAL,
        ),
        data_quality=data_quality_for(fields_present),
        fields_present=fields_present,
    )

    logger.debug(
        "vital_scored",
        session_id=vital.session_id,
        risk_level=risk_level.value,
        risk_score=risk_score,
        data_quality=result.data_quality.value,
    )
    return result
