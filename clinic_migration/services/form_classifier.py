"""Deterministic classification of submitted forms."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

CONSENT_KEYWORDS = ("consent", "waiver", "agreement", "policy", "authorization", "instructions")
INTAKE_KEYWORDS = ("intake", "history", "questionnaire", "survey", "registration")
CLINICAL_KEYWORDS = ("chart", "treatment", "procedure", "clinical", "assessment")

# Field types that carry no patient-entered data
NON_DATA_FIELD_TYPES = ("heading", "signature", "image")


class FormKind(str, Enum):
    """What a submitted form becomes in the target system."""
    CONSENT = "consent"
    CLINICAL_CHART = "clinical_chart"
    INTAKE = "intake"
    SKIP = "skip"


@dataclass
class ChartData:
    """Chart content extracted from a clinical form."""
    chief_complaint: str
    treatment_card_title: str
    narrative_text: str
    template_type: str = "Other"
    structured_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chiefComplaint": self.chief_complaint,
            "templateType": self.template_type,
            "treatmentCardTitle": self.treatment_card_title,
            "narrativeText": self.narrative_text,
            "structuredData": self.structured_data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChartData":
        return cls(
            chief_complaint=data.get("chiefComplaint", ""),
            treatment_card_title=data.get("treatmentCardTitle", ""),
            narrative_text=data.get("narrativeText", ""),
            template_type=data.get("templateType", "Other"),
            structured_data=data.get("structuredData") or {},
        )


@dataclass
class FormClassification:
    form_source_id: str
    classification: FormKind
    confidence: float
    reasoning: str
    chart_data: Optional[ChartData] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formSourceId": self.form_source_id,
            "classification": self.classification.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "chartData": self.chart_data.to_dict() if self.chart_data else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormClassification":
        chart = data.get("chartData")
        return cls(
            form_source_id=data["formSourceId"],
            classification=FormKind(data["classification"]),
            confidence=float(data.get("confidence", 0.0)),
            reasoning=data.get("reasoning", ""),
            chart_data=ChartData.from_dict(chart) if chart else None,
        )


def build_narrative(fields: List[Dict[str, Any]]) -> str:
    """
    Render the data-bearing fields of a form as ``Label: value`` lines.

    Fields are emitted in list order. Headings, signatures and images are
    dropped, as are fields without a value or selected options. Selected
    options win over the raw value.
    """
    lines = []
    for fld in fields or []:
        if fld.get("type") in NON_DATA_FIELD_TYPES:
            continue
        selected = fld.get("selectedOptions") or []
        value = ", ".join(selected) if selected else (fld.get("value") or "")
        if value:
            lines.append(f"{fld.get('label', '')}: {value}")
    return "\n".join(lines)


def classify_form(form: Dict[str, Any]) -> FormClassification:
    """
    Classify one form record (artifact wire shape, optionally with ``fields``).

    Rules are checked in order; the first match wins.

    Args:
        form: Form record with templateName, isInternal and optional fields

    Returns:
        FormClassification
    """
    source_id = str(form.get("sourceId", ""))
    template = form.get("templateName") or ""
    name = template.lower()

    if form.get("isInternal") and "chart" not in name and "treatment" not in name:
        return FormClassification(source_id, FormKind.SKIP, 0.8, "Internal admin form")

    if any(k in name for k in CONSENT_KEYWORDS):
        return FormClassification(
            source_id, FormKind.CONSENT, 0.9,
            f'Template name "{template}" matches consent pattern',
        )

    if any(k in name for k in INTAKE_KEYWORDS):
        return FormClassification(
            source_id, FormKind.INTAKE, 0.85,
            f'Template name "{template}" matches intake pattern',
        )

    if any(k in name for k in CLINICAL_KEYWORDS):
        chart = ChartData(
            chief_complaint=template,
            treatment_card_title=template,
            narrative_text=build_narrative(form.get("fields") or []),
        )
        return FormClassification(
            source_id, FormKind.CLINICAL_CHART, 0.75,
            f'Template name "{template}" matches clinical chart pattern',
            chart_data=chart,
        )

    return FormClassification(
        source_id, FormKind.CONSENT, 0.6,
        f'No clear pattern match for "{template}", defaulting to consent',
    )
