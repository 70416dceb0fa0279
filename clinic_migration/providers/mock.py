"""Deterministic demo clinic used for development and tests.

The data deliberately carries the quality problems a real export has: a
patient sharing an email with another, a patient without an email, a
duplicate consultation service and an appointment referencing a service
that does not exist.
"""

from typing import Any, Dict, Iterable, List, Optional
import copy

from .base import BaseProvider
from ..models.record import (
    ConnectionTestResult,
    FetchOptions,
    FetchResult,
    FormField,
    SourceAppointment,
    SourceChart,
    SourceDocument,
    SourceForm,
    SourceInvoice,
    SourceInvoiceLineItem,
    SourcePatient,
    SourcePhoto,
    SourceService,
)
from ..models.schema import CORE_ENTITY_TYPES, EntityType


def _raw(source_id: str) -> Dict[str, Any]:
    return {"id": source_id, "source": "mock"}


MOCK_PATIENTS = [
    SourcePatient(
        "mock-p-1", "Sarah", "Johnson",
        email="sarah.johnson@example.com", phone="+15551234567", date_of_birth="1985-03-15",
        gender="Female", address="123 Main St", city="Beverly Hills", state="CA", zip_code="90210",
        allergies="Latex", raw_data=_raw("mock-p-1"),
    ),
    SourcePatient(
        "mock-p-2", "Emily", "Chen",
        email="emily.chen@example.com", phone="+15559876543", date_of_birth="1992-07-22",
        gender="Female", raw_data=_raw("mock-p-2"),
    ),
    SourcePatient(
        "mock-p-3", "Michael", "Rivera",
        email="m.rivera@example.com", phone="+15555551234", date_of_birth="1978-11-08",
        gender="Male", raw_data=_raw("mock-p-3"),
    ),
    # Same email, phone and DOB as mock-p-1
    SourcePatient(
        "mock-p-4", "Sarah", "Johnson-Smith",
        email="sarah.johnson@example.com", phone="+15551234567", date_of_birth="1985-03-15",
        raw_data=_raw("mock-p-4"),
    ),
    # No email
    SourcePatient(
        "mock-p-5", "Jennifer", "Williams",
        phone="+15553334444", date_of_birth="1990-01-20", gender="Female",
        raw_data=_raw("mock-p-5"),
    ),
]

MOCK_SERVICES = [
    SourceService("mock-s-1", "Botox - Forehead", "Botulinum toxin injection for forehead lines",
                  30, 350, "Injectables", raw_data=_raw("mock-s-1")),
    SourceService("mock-s-2", "Botox - Glabella (20 units)", "Botulinum toxin for glabella lines, 20 units",
                  15, 260, "Injectables", raw_data=_raw("mock-s-2")),
    SourceService("mock-s-3", "Juvederm Voluma - Cheeks", "Hyaluronic acid filler for cheek augmentation",
                  45, 800, "Dermal Fillers", raw_data=_raw("mock-s-3")),
    SourceService("mock-s-4", "HydraFacial Platinum", "Premium HydraFacial with LED and lymphatic drainage",
                  90, 350, "Facials", raw_data=_raw("mock-s-4")),
    SourceService("mock-s-5", "Lip Flip", "Botox lip flip for subtle upper lip enhancement",
                  15, 150, "Injectables", raw_data=_raw("mock-s-5")),
    SourceService("mock-s-6", "Consultation - New Patient", "Initial consultation for new patients",
                  30, 0, "Consultations", raw_data=_raw("mock-s-6")),
    # Same service as mock-s-6 under another name
    SourceService("mock-s-7", "New Patient Consult", "New patient consultation",
                  30, 0, "Consultations", is_active=False, raw_data=_raw("mock-s-7")),
]

MOCK_APPOINTMENTS = [
    SourceAppointment(
        "mock-a-1", "mock-p-1", "2025-06-15T10:00:00Z", "completed",
        provider_name="Dr. Kim", service_source_id="mock-s-1", service_name="Botox - Forehead",
        end_time="2025-06-15T10:30:00Z", notes="Patient tolerated well. Follow-up in 3 months.",
        raw_data=_raw("mock-a-1"),
    ),
    SourceAppointment(
        "mock-a-2", "mock-p-2", "2025-07-01T14:00:00Z", "completed",
        provider_name="Dr. Kim", service_source_id="mock-s-3", service_name="Juvederm Voluma - Cheeks",
        end_time="2025-07-01T14:45:00Z", raw_data=_raw("mock-a-2"),
    ),
    SourceAppointment(
        "mock-a-3", "mock-p-3", "2025-08-10T09:00:00Z", "completed",
        provider_name="Dr. Patel", service_source_id="mock-s-4", service_name="HydraFacial Platinum",
        end_time="2025-08-10T10:30:00Z", raw_data=_raw("mock-a-3"),
    ),
    # References a service that does not exist
    SourceAppointment(
        "mock-a-4", "mock-p-1", "2025-09-05T11:00:00Z", "no-show",
        provider_name="Dr. Unknown", service_source_id="mock-s-99", service_name="Laser Hair Removal",
        end_time="2025-09-05T12:00:00Z", raw_data=_raw("mock-a-4"),
    ),
]

MOCK_INVOICES = [
    SourceInvoice(
        "mock-inv-1", "mock-p-1", "paid", 350, invoice_number="INV-001", subtotal=350, tax_amount=0,
        paid_at="2025-06-15T11:00:00Z",
        line_items=[SourceInvoiceLineItem("Botox - Forehead", 1, 350, 350, "mock-s-1")],
        raw_data=_raw("mock-inv-1"),
    ),
    SourceInvoice(
        "mock-inv-2", "mock-p-2", "paid", 800, invoice_number="INV-002", subtotal=800, tax_amount=0,
        paid_at="2025-07-01T15:00:00Z",
        line_items=[SourceInvoiceLineItem("Juvederm Voluma - Cheeks", 1, 800, 800, "mock-s-3")],
        raw_data=_raw("mock-inv-2"),
    ),
]

MOCK_PHOTOS = [
    SourcePhoto(
        "mock-photo-1", "mock-p-1", "https://example.com/photos/patient1-before.jpg",
        filename="patient1-before.jpg", mime_type="image/jpeg", category="before",
        caption="Before treatment - frontal view", raw_data=_raw("mock-photo-1"),
    ),
    SourcePhoto(
        "mock-photo-2", "mock-p-1", "https://example.com/photos/patient1-after.jpg",
        filename="patient1-after.jpg", mime_type="image/jpeg", category="after",
        caption="After treatment - frontal view", raw_data=_raw("mock-photo-2"),
    ),
]

MOCK_FORMS = [
    SourceForm(
        "mock-form-1", "mock-p-1", "Botox Consent Form", template_id="tmpl-consent-botox",
        submitted_at="2025-06-15T09:45:00Z", submitted_by_name="Sarah Johnson",
        submitted_by_role="client", appointment_source_id="mock-a-1", raw_data=_raw("mock-form-1"),
    ),
    SourceForm(
        "mock-form-2", "mock-p-1", "New Patient Intake Form", template_id="tmpl-intake",
        submitted_at="2025-06-15T09:30:00Z", submitted_by_name="Sarah Johnson",
        submitted_by_role="client", raw_data=_raw("mock-form-2"),
    ),
    SourceForm(
        "mock-form-3", "mock-p-2", "Dermal Filler Consent Form", template_id="tmpl-consent-filler",
        submitted_at="2025-07-01T13:30:00Z", submitted_by_name="Emily Chen",
        submitted_by_role="client", appointment_source_id="mock-a-2", raw_data=_raw("mock-form-3"),
    ),
    SourceForm(
        "mock-form-4", "mock-p-1", "Medical History Review", template_id="tmpl-medical-history",
        is_internal=True, submitted_at="2025-06-15T10:00:00Z", submitted_by_name="Dr. Kim",
        submitted_by_role="staff", appointment_source_id="mock-a-1", raw_data=_raw("mock-form-4"),
    ),
    SourceForm(
        "mock-form-5", "mock-p-1", "Dermalier Patient Treatment Chart", template_id="tmpl-treatment-chart",
        submitted_at="2025-06-15T10:15:00Z", submitted_by_name="Dr. Kim",
        submitted_by_role="staff", appointment_source_id="mock-a-1", raw_data=_raw("mock-form-5"),
    ),
]

MOCK_CHARTS = [
    SourceChart(
        "mock-chart-1", "mock-p-1", "2025-06-15", appointment_source_id="mock-a-1", provider_name="Dr. Kim",
        notes="Botox 20 units to forehead. Patient tolerated well. No complications. "
              "Follow-up in 3 months for re-evaluation.",
        structured_data={"treatment": "Botox", "area": "Forehead", "units": 20, "complications": "None"},
        raw_data=_raw("mock-chart-1"),
    ),
    SourceChart(
        "mock-chart-2", "mock-p-2", "2025-07-01", appointment_source_id="mock-a-2", provider_name="Dr. Kim",
        notes="Juvederm Voluma 1 syringe to each cheek. Mild swelling expected. Ice applied post-procedure.",
        structured_data={"treatment": "Juvederm Voluma", "area": "Cheeks", "syringes": 2,
                         "complications": "Mild swelling"},
        raw_data=_raw("mock-chart-2"),
    ),
    SourceChart(
        "mock-chart-3", "mock-p-3", "2025-08-10", appointment_source_id="mock-a-3", provider_name="Dr. Patel",
        notes="HydraFacial Platinum with LED therapy and lymphatic drainage. "
              "Skin analysis shows improvement in hydration levels.",
        raw_data=_raw("mock-chart-3"),
    ),
]

MOCK_DOCUMENTS = [
    SourceDocument("mock-doc-1", "mock-p-1", "https://example.com/docs/consent-botox-sarah.pdf",
                   "consent-botox-sarah.pdf", "application/pdf", "consent", raw_data=_raw("mock-doc-1")),
    SourceDocument("mock-doc-2", "mock-p-2", "https://example.com/docs/consent-filler-emily.pdf",
                   "consent-filler-emily.pdf", "application/pdf", "consent", raw_data=_raw("mock-doc-2")),
    SourceDocument("mock-doc-3", "mock-p-1", "https://example.com/docs/intake-sarah.pdf",
                   "intake-form-sarah.pdf", "application/pdf", "intake", raw_data=_raw("mock-doc-3")),
]

MOCK_FORM_CONTENT: Dict[str, List[FormField]] = {
    "mock-form-1": [
        FormField("f1", "I consent to Botox treatment", "checkbox", "Yes", ["Yes"], sort_order=0),
        FormField("f2", "I understand the risks", "checkbox", "Yes", ["Yes"], sort_order=1),
        FormField("f3", "Patient Signature", "signature", "[signed]", sort_order=2),
    ],
    "mock-form-2": [
        FormField("f4", "Current Medications", "textarea", "None", sort_order=0),
        FormField("f5", "Previous Cosmetic Procedures", "textarea", "Botox 2024", sort_order=1),
        FormField("f6", "Drug Allergies", "text", "Latex", sort_order=2),
        FormField("f7", "Skin Type", "select", "Type III", ["Type III"],
                  ["Type I", "Type II", "Type III", "Type IV", "Type V", "Type VI"], 3),
    ],
    "mock-form-3": [
        FormField("f8", "I consent to dermal filler treatment", "checkbox", "Yes", ["Yes"], sort_order=0),
        FormField("f9", "I acknowledge post-treatment care instructions", "checkbox", "Yes", ["Yes"],
                  sort_order=1),
    ],
    "mock-form-5": [
        FormField("f10", "Treatment Type", "dropdown", "Botox", ["Botox"],
                  ["Botox", "Dysport", "Xeomin", "Juvederm", "Restylane"], 0),
        FormField("f11", "Areas Treated", "checkbox", "Forehead, Glabella", ["Forehead", "Glabella"],
                  ["Forehead", "Glabella", "Crow's Feet", "Lip Flip", "Masseter", "Bunny Lines"], 1),
        FormField("f12", "Total Units", "text", "20", sort_order=2),
        FormField("f13", "Product/Lot Number", "text", "BOT-2025-A1234", sort_order=3),
        FormField("f14", "Complications", "textarea", "None", sort_order=4),
        FormField("f15", "Post-Treatment Instructions Given", "checkbox", "Yes", ["Yes"], sort_order=5),
    ],
}


class MockProvider(BaseProvider):
    """
    In-process provider serving the demo clinic.

    Supports:
    - Every entity type, including form content
    - Cursor pagination (the cursor is the next offset)
    - Optional per-patient scoping of photos, forms and documents
    """

    source = "mock"
    capabilities = CORE_ENTITY_TYPES | {
        EntityType.PHOTOS,
        EntityType.CHARTS,
        EntityType.FORMS,
        EntityType.DOCUMENTS,
        EntityType.FORM_CONTENT,
    }

    def __init__(self, per_patient: Iterable[EntityType] = ()):
        self.per_patient = frozenset(EntityType(e) for e in per_patient)
        self.calls: List[str] = []

    def test_connection(self, credentials: Dict[str, Any]) -> ConnectionTestResult:
        if credentials.get("email") and credentials.get("password"):
            if credentials["password"] == "invalid":
                return ConnectionTestResult(False, error_message="Invalid credentials")
            return ConnectionTestResult(True, "Mock MedSpa Clinic", "mock-loc-1")

        if credentials.get("apiKey") == "invalid":
            return ConnectionTestResult(False, error_message="Invalid API key")
        if not credentials.get("email") and not credentials.get("apiKey"):
            return ConnectionTestResult(False, error_message="Email and password are required")
        return ConnectionTestResult(True, "Mock MedSpa Clinic", "mock-loc-1")

    def _page(self, name: str, records: List[Any], options: FetchOptions) -> FetchResult:
        self.calls.append(name)
        if options.patient_source_id is not None:
            records = [r for r in records if r.patient_source_id == options.patient_source_id]
        start = int(options.cursor) if options.cursor else 0
        end = start + options.limit
        return FetchResult(
            data=copy.deepcopy(records[start:end]),
            next_cursor=str(end) if end < len(records) else None,
            total_count=len(records),
        )

    def fetch_patients(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("patients", MOCK_PATIENTS, options)

    def fetch_services(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("services", MOCK_SERVICES, options)

    def fetch_appointments(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("appointments", MOCK_APPOINTMENTS, options)

    def fetch_invoices(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("invoices", MOCK_INVOICES, options)

    def fetch_photos(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("photos", MOCK_PHOTOS, options)

    def fetch_charts(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("charts", MOCK_CHARTS, options)

    def fetch_forms(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("forms", MOCK_FORMS, options)

    def fetch_documents(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._page("documents", MOCK_DOCUMENTS, options)

    def fetch_form_content(self, credentials: Dict[str, Any], form_id: str) -> List[FormField]:
        self.calls.append(f"form_content:{form_id}")
        return copy.deepcopy(MOCK_FORM_CONTENT.get(form_id, []))
