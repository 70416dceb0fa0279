"""Migration orchestrator - drives a run through the phase state machine."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import (
    ApprovalRequiredError,
    InvalidStateError,
    MappingSpecError,
    MigrationError,
    SourceAccessError,
    ValidationFailedError,
)
from .extractors.api_extractor import APIExtractor
from .extractors.base import BaseExtractor
from .extractors.resolver import resolve_strategy
from .extractors.upload_extractor import UploadedFile, UploadExtractor, read_uploaded_files
from .extractors.web_scraper import BrowserAgent, PlaywrightBrowserAgent, WebScraperExtractor
from .loaders.api_loader import APITargetStore
from .loaders.base import TargetStore
from .loaders.memory_loader import InMemoryTargetStore
from .loaders.promoter import Promoter
from .models.migration import (
    IngestStrategyType,
    MigrationConfig,
    MigrationRun,
    Phase,
    PHASE_ORDER,
    PHASE_STATUSES,
    RunStatus,
)
from .models.record import AuditAction, CanonicalRecord, LogStatus, MigrationLogEntry
from .models.schema import EntityType, MappingSpec, validate_mapping_spec
from .providers import get_provider
from .providers.base import BaseProvider
from .services.assistant import MigrationAssistant
from .services.form_classifier import FormClassification
from .services.profiler import SourceProfile, guess_entity_type, load_records, profile_artifacts
from .services.reconciler import Reconciler
from .services.safe_context import PHIRedactor, SafeContextBuilder
from .services.transformer import TransformEngine, TransformOutcome
from .services.validator import CanonicalValidator
from .services.vault import CredentialVault
from .storage.artifact_store import ArtifactStore, LocalArtifactStore
from .storage.repository import MigrationRepository

logger = logging.getLogger(__name__)

PROFILE_KEY = "_profile.json"
CANONICAL_KEY = "_canonical.json"
REPORT_KEY = "_report.json"

PRE_APPROVAL_PHASES = [Phase.INGEST, Phase.PROFILE, Phase.DRAFT_MAPPING]
POST_APPROVAL_PHASES = [Phase.TRANSFORM, Phase.VALIDATE, Phase.LOAD, Phase.RECONCILE]


class MigrationOrchestrator:
    """
    Orchestrates migration runs.

    Handles:
    - Run creation with strategy resolution and encrypted credentials
    - One phase at a time, with audit events for every transition
    - The human approval gate between mapping draft and transform
    - Cooperative pause and resume from the interrupted phase
    - Failure capture at the phase boundary
    """

    def __init__(
        self,
        config: MigrationConfig,
        repository: Optional[MigrationRepository] = None,
        artifact_store: Optional[ArtifactStore] = None,
        target_store: Optional[TargetStore] = None,
        assistant: Optional[MigrationAssistant] = None,
        vault: Optional[CredentialVault] = None,
        provider: Optional[BaseProvider] = None,
        browser_agent: Optional[BrowserAgent] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            repository: Run state store; defaults to a JSON file under ``data_dir``
            artifact_store: Artifact store; defaults to ``data_dir/artifacts``
            target_store: Destination of promoted records
            assistant: Advisory assistant; defaults to one built from the config
            vault: Credential vault; defaults to the key in the environment
            provider: Provider override; otherwise resolved from the run's vendor
            browser_agent: Browser agent override for browser ingest
        """
        self.config = config
        data_dir = Path(config.data_dir)
        self.repository = repository or MigrationRepository(data_dir / "runs.json")
        self.artifact_store = artifact_store or LocalArtifactStore(data_dir / "artifacts")
        if target_store is None:
            if config.target_api_url:
                target_store = APITargetStore(config.target_api_url, api_key=config.target_api_key)
            else:
                target_store = InMemoryTargetStore()
        self.target_store = target_store
        self.assistant = assistant or MigrationAssistant(
            api_key=config.llm_api_key,
            model=config.llm_model,
            provider=config.llm_provider,
            offline=not config.use_llm,
        )
        self._vault = vault
        self.provider = provider
        self.browser_agent = browser_agent

        self.safe_context = SafeContextBuilder()
        self.redactor = PHIRedactor()
        self.validator = CanonicalValidator()
        self.reconciler = Reconciler(self.repository)

        self._handlers: Dict[Phase, Callable[[MigrationRun], bool]] = {
            Phase.INGEST: self._run_ingest,
            Phase.PROFILE: self._run_profile,
            Phase.DRAFT_MAPPING: self._run_draft_mapping,
            Phase.TRANSFORM: self._run_transform,
            Phase.VALIDATE: self._run_validate,
            Phase.LOAD: self._run_load,
            Phase.RECONCILE: self._run_reconcile,
        }

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = CredentialVault.from_env()
        return self._vault

    # Run lifecycle

    def create_run(
        self,
        clinic_id: str,
        vendor: str,
        credentials: Optional[Dict[str, Any]] = None,
        entry_url: Optional[str] = None,
        uploaded_files: Optional[Sequence[UploadedFile]] = None,
        strategy: Optional[str] = None,
    ) -> MigrationRun:
        """
        Create a run and resolve its ingest strategy.

        Uploaded files are stored as artifacts right away so the run can be
        ingested later, or by another process.
        """
        ingest_strategy = resolve_strategy(
            strategy or self.config.strategy,
            has_uploaded_files=bool(uploaded_files),
            has_credentials=bool(credentials),
            entry_url=entry_url,
        )
        run = MigrationRun(
            clinic_id=clinic_id,
            source_vendor=vendor,
            ingest_strategy=ingest_strategy,
            entry_url=entry_url,
        )
        if credentials:
            run.credentials_encrypted = self.vault.encrypt_credentials(credentials)
        self.repository.create_run(run)

        for key, data in read_uploaded_files(uploaded_files or []):
            run.add_artifact(self.artifact_store.put(run.id, key, data))
            run.uploaded_keys.append(key)
        if run.uploaded_keys:
            self.repository.save_run(run)

        logger.info(f"Created run {run.id} ({vendor}, {ingest_strategy.value} ingest)")
        return run

    def run_phase(self, run_id: str, phase: Phase) -> MigrationRun:
        """
        Execute exactly one phase.

        Raises:
            ApprovalRequiredError: If asked to run the approval gate
            MigrationError: Whatever the phase raised; the run is marked FAILED first
        """
        phase = Phase(phase)
        if phase == Phase.APPROVE_MAPPING:
            raise ApprovalRequiredError("Mapping approval is a human action. Call approve_mapping() to continue.")

        run = self.repository.get_run(run_id)
        running, done = PHASE_STATUSES[phase]

        logger.info(f"=== PHASE: {phase.value.upper()} ===")
        run.status = running
        run.current_phase = phase
        run.error_message = None
        run.started_at = run.started_at or datetime.utcnow()
        self.repository.save_run(run)
        self.repository.record_event(run.id, AuditAction.PHASE_STARTED, phase.value)

        try:
            paused = self._handlers[phase](run)
        except Exception as e:
            logger.error(f"Phase {phase.value} failed for run {run.id}: {e}")
            run.status = RunStatus.FAILED
            run.error_message = str(e)
            self.repository.save_run(run)
            self.repository.record_event(run.id, AuditAction.PHASE_FAILED, phase.value, details={"error": str(e)})
            raise

        if paused:
            run.status = RunStatus.PAUSED
            self.repository.save_run(run)
            self.repository.record_event(run.id, AuditAction.RUN_PAUSED, phase.value)
            logger.info(f"Run {run.id} paused during {phase.value}")
            return run

        run.status = done
        run.metadata["lastCompletedPhase"] = phase.value
        if phase == Phase.RECONCILE:
            run.completed_at = datetime.utcnow()
        self.repository.save_run(run)
        self.repository.record_event(run.id, AuditAction.PHASE_COMPLETED, phase.value)
        return run

    def run_to_approval(self, run_id: str) -> MigrationRun:
        """Run ingest, profile and draft_mapping."""
        return self._run_sequence(run_id, PRE_APPROVAL_PHASES)

    def approve_mapping(self, run_id: str, approver_id: str) -> MigrationRun:
        """
        Approve the latest mapping spec draft.

        Raises:
            MigrationError: If no spec was drafted
            InvalidStateError: If the run is not waiting for approval
        """
        run = self.repository.get_run(run_id)
        spec = self.repository.get_spec(run_id)
        if spec is None:
            raise MigrationError("No mapping spec to approve")
        # A run paused while parked at the gate is still waiting for approval
        paused_at_gate = (
            run.status == RunStatus.PAUSED
            and self.resume_point(run) == Phase.APPROVE_MAPPING
        )
        if run.status != RunStatus.MAPPING_DRAFTED and not paused_at_gate:
            raise InvalidStateError(
                f"Run {run_id} is {run.status.value}, expected {RunStatus.MAPPING_DRAFTED.value}"
            )

        run.mapping_spec_version = spec.version
        run.mapping_approved_at = datetime.utcnow()
        run.approved_by_id = approver_id
        run.status = RunStatus.MAPPING_APPROVED
        run.current_phase = Phase.APPROVE_MAPPING
        run.metadata["lastCompletedPhase"] = Phase.APPROVE_MAPPING.value
        self.repository.clear_pause(run_id)
        self.repository.save_run(run)
        self.repository.record_event(
            run.id, AuditAction.MAPPING_APPROVED, Phase.APPROVE_MAPPING.value,
            actor_id=approver_id, details={"version": spec.version},
        )
        logger.info(f"Mapping spec v{spec.version} approved for run {run_id}")
        return run

    def run_from_approval(self, run_id: str) -> MigrationRun:
        """Run transform, validate, load and reconcile."""
        run = self.repository.get_run(run_id)
        if run.mapping_approved_at is None:
            raise ApprovalRequiredError("Mapping spec must be approved before transform")
        return self._run_sequence(run_id, POST_APPROVAL_PHASES)

    def pause(self, run_id: str) -> None:
        """
        Request a pause; the running phase stops at its next batch boundary.

        Raises:
            InvalidStateError: If the run already completed or failed
        """
        run = self.repository.get_run(run_id)
        if run.status in (RunStatus.COMPLETED, RunStatus.FAILED):
            raise InvalidStateError(f"Cannot pause run {run_id} in status {run.status.value}")
        self.repository.request_pause(run_id)
        logger.info(f"Pause requested for run {run_id}")

    def resume(self, run_id: str) -> MigrationRun:
        """
        Continue a paused or failed run from its current phase.

        A phase that finished is moved past; an interrupted one is re-run.

        Raises:
            InvalidStateError: If the run already completed
            ApprovalRequiredError: If the run is waiting at the approval gate
        """
        run = self.repository.get_run(run_id)
        if run.status == RunStatus.COMPLETED:
            raise InvalidStateError(f"Run {run_id} already completed")

        self.repository.clear_pause(run_id)
        self.repository.record_event(run_id, AuditAction.RUN_RESUMED, run.current_phase.value)

        next_phase = self.resume_point(run)
        if next_phase is None:
            return run
        logger.info(f"Resuming run {run_id} at {next_phase.value}")

        for phase in PHASE_ORDER[PHASE_ORDER.index(next_phase):]:
            if phase == Phase.APPROVE_MAPPING:
                run = self.repository.get_run(run_id)
                if run.mapping_approved_at is None:
                    run.status = RunStatus.MAPPING_DRAFTED
                    run.current_phase = Phase.APPROVE_MAPPING
                    self.repository.save_run(run)
                    raise ApprovalRequiredError(
                        "Pipeline paused at approve_mapping. Call approve_mapping() to continue."
                    )
                continue
            if self.repository.pause_requested(run_id):
                return self._mark_paused(run_id)
            run = self.run_phase(run_id, phase)
            if run.status == RunStatus.PAUSED:
                return run

        return self.repository.get_run(run_id)

    @staticmethod
    def resume_point(run: MigrationRun) -> Optional[Phase]:
        """The phase a resume starts at: the current one, or the next if it finished."""
        index = PHASE_ORDER.index(run.current_phase)
        if run.metadata.get("lastCompletedPhase") == run.current_phase.value:
            index += 1
        return PHASE_ORDER[index] if index < len(PHASE_ORDER) else None

    def resolve_review(self, run_id: str, source_id: str) -> MigrationRun:
        """Mark a fuzzy duplicate review as handled by an operator."""
        run = self.repository.get_run(run_id)
        for review in run.duplicate_reviews:
            if review.source_id == source_id:
                review.resolved = True
                self.repository.save_run(run)
                return run
        raise InvalidStateError(f"No duplicate review for source record {source_id}")

    def get_status(self, run_id: str) -> Dict[str, Any]:
        run = self.repository.get_run(run_id)
        return {
            "run": run.to_dict(),
            "events": [e.to_dict() for e in self.repository.events(run_id)],
            "logSummary": self.repository.log_summary(run_id),
            "pendingReviews": [r.to_dict() for r in run.pending_reviews],
        }

    def _run_sequence(self, run_id: str, phases: List[Phase]) -> MigrationRun:
        run = self.repository.get_run(run_id)
        for phase in phases:
            if self.repository.pause_requested(run_id):
                return self._mark_paused(run_id)
            run = self.run_phase(run_id, phase)
            if run.status == RunStatus.PAUSED:
                break
        return run

    def _mark_paused(self, run_id: str) -> MigrationRun:
        run = self.repository.get_run(run_id)
        run.status = RunStatus.PAUSED
        self.repository.save_run(run)
        self.repository.record_event(run_id, AuditAction.RUN_PAUSED, run.current_phase.value)
        logger.info(f"Run {run_id} paused before {run.current_phase.value}")
        return run

    # Phases; each returns True when it stopped early for a pause

    def _run_ingest(self, run: MigrationRun) -> bool:
        extractor = self._create_extractor(run)
        result = extractor.extract()
        run.metadata["ingest"] = {
            "strategy": result.strategy.value,
            "entityCounts": result.entity_counts,
            "errors": result.errors,
            "warnings": result.warnings,
            "durationSeconds": result.duration_seconds,
        }
        if result.paused:
            return True

        if not result.entity_counts and result.errors:
            raise SourceAccessError(f"Ingest produced no data: {result.errors[0]['message']}")

        samples = {
            guess_entity_type(key): records
            for key, records in self._read_data_artifacts(run)
        }
        run.metadata["discovery"] = self.assistant.discover(samples).to_dict()
        logger.info(f"Ingested {sum(result.entity_counts.values())} records: {result.entity_counts}")
        return False

    def _run_profile(self, run: MigrationRun) -> bool:
        artifacts = [(ref.key, self.artifact_store.get(run.id, ref.key)) for ref in self._data_refs(run)]
        profile = profile_artifacts(artifacts)
        run.add_artifact(self.artifact_store.put_json(run.id, PROFILE_KEY, profile.to_dict()))
        run.metadata["profileSummary"] = {e.entity_type: e.record_count for e in profile.entities}

        contents = dict(artifacts)
        snapshots = {}
        for entity in profile.entities:
            records = load_records(entity.source, contents[entity.source])
            if records:
                phi = [f.name for f in entity.fields if f.is_phi]
                snapshots[entity.entity_type] = self.redactor.redact_record(records[0], phi)
        run.metadata["sampleSnapshots"] = snapshots
        return False

    def _run_draft_mapping(self, run: MigrationRun) -> bool:
        profile = self._load_profile(run)
        target_services = self.target_store.list_services(run.clinic_id)
        context = self.safe_context.build_from_profile(
            profile,
            [{"id": s.get("id"), "name": s.get("name")} for s in target_services],
        )

        version = self.repository.next_spec_version(run.id)
        spec = self.assistant.draft_mapping_spec(context, run.source_vendor, version)

        services = self._records_for(run, profile, EntityType.SERVICES.value)
        if services:
            spec.service_mappings = self.assistant.propose_service_mappings(services, target_services).mappings

        errors = validate_mapping_spec(spec.to_dict())
        if errors:
            raise MappingSpecError(f"Drafted mapping spec is invalid ({len(errors)} errors)", errors)

        forms = self._records_for(run, profile, EntityType.FORMS.value)
        if forms:
            run.metadata["formClassifications"] = [c.to_dict() for c in self.assistant.classify_forms(forms)]

        self.repository.save_spec(run.id, spec)
        run.mapping_spec_version = version
        run.mapping_approved_at = None
        run.approved_by_id = None

        needs_approval = sum(
            1 for m in spec.entity_mappings for f in m.field_mappings if f.requires_approval
        )
        self.repository.record_event(
            run.id, AuditAction.MAPPING_DRAFTED, Phase.DRAFT_MAPPING.value,
            details={
                "version": version,
                "draftedBy": spec.drafted_by,
                "entityMappings": len(spec.entity_mappings),
                "fieldsRequiringApproval": needs_approval,
            },
        )

        run.metadata["dryValidation"] = self._dry_validate(run, spec, profile)
        logger.info(
            f"Drafted mapping spec v{version} for run {run.id}: {len(spec.entity_mappings)} entities, "
            f"{needs_approval} fields need approval"
        )
        return False

    def _run_transform(self, run: MigrationRun) -> bool:
        spec = self._approved_spec(run)
        outcomes = self._transform(run, spec, self._load_profile(run))

        summary = {}
        for outcome in outcomes:
            for skipped in outcome.skipped:
                self._log_transform(run, outcome.source_entity, skipped["source_id"], LogStatus.SKIPPED,
                                    reasoning=skipped["reasoning"], raw_data=skipped["raw_data"])
            for failed in outcome.failed:
                self._log_transform(run, outcome.source_entity, failed["source_id"], LogStatus.FAILED,
                                    error_message=failed["error_message"], raw_data=failed["raw_data"])
            summary[outcome.source_entity] = {
                "records": len(outcome.records),
                "skipped": len(outcome.skipped),
                "failed": len(outcome.failed),
                "canonical": outcome.counts,
            }

        records = [r for outcome in outcomes for r in outcome.records]
        for entity_type in {r.entity_type for r in records}:
            run.progress_for(entity_type).total = sum(1 for r in records if r.entity_type == entity_type)

        run.add_artifact(self.artifact_store.put_json(run.id, CANONICAL_KEY, [r.to_dict() for r in records]))
        run.metadata["transform"] = summary
        logger.info(f"Transformed {len(records)} canonical records for run {run.id}")
        return False

    def _run_validate(self, run: MigrationRun) -> bool:
        records = self._load_canonical(run)
        outcome = self.validator.validate(records, self._resolver(run))
        run.metadata["validation"] = outcome.to_dict()

        if not outcome.passed:
            self.repository.record_event(
                run.id, AuditAction.VALIDATION_FAILED, Phase.VALIDATE.value,
                details={
                    "invalidRecords": outcome.report["invalidRecords"],
                    "referentialErrors": len(outcome.referential_errors),
                    "errorsByCode": outcome.report.get("errorsByCode", {}),
                },
            )
            raise ValidationFailedError(f"Validation failed: {outcome.summary}", outcome.to_dict())
        return False

    def _run_load(self, run: MigrationRun) -> bool:
        spec = self._approved_spec(run)
        promoter = Promoter(
            run,
            self.repository,
            self.target_store,
            batch_size=self.config.batch_size,
            fuzzy_duplicate_action=self.config.fuzzy_duplicate_action,
            fuzzy_prefix_length=self.config.fuzzy_prefix_length,
            should_pause=lambda: self.repository.pause_requested(run.id),
        )
        promoter.stage(self._load_canonical(run))

        load_summary = {}
        if spec.service_mappings:
            load_summary["service"] = promoter.apply_service_mappings(spec.service_mappings).to_dict()

        outcome = promoter.promote()
        load_summary.update({entity: r.to_dict() for entity, r in outcome.results.items()})
        run.metadata["load"] = load_summary
        return outcome.paused

    def _run_reconcile(self, run: MigrationRun) -> bool:
        spec = self.repository.get_spec(run.id, run.mapping_spec_version or None)
        report = self.reconciler.reconcile(run, spec)

        load_logs = [
            {"entity_type": e.entity_type, "status": e.status.value}
            for e in self.repository.logs(run.id) if e.phase == "load"
        ]
        report.verification = self.assistant.verification_summary(load_logs).to_dict()

        run.report = report.to_dict()
        run.add_artifact(self.artifact_store.put_json(run.id, REPORT_KEY, run.report))
        return False

    # Helpers

    def _create_extractor(self, run: MigrationRun) -> BaseExtractor:
        should_pause = lambda: self.repository.pause_requested(run.id)

        if run.ingest_strategy == IngestStrategyType.UPLOAD:
            files = [(key, self.artifact_store.get(run.id, key)) for key in run.uploaded_keys]
            return UploadExtractor(run, self.artifact_store, files, self.repository, should_pause)

        credentials = self.vault.decrypt_credentials(run.credentials_encrypted)
        if run.ingest_strategy == IngestStrategyType.BROWSER:
            agent = self.browser_agent or PlaywrightBrowserAgent(
                self.config.browser_sections, headless=self.config.headless,
            )
            return WebScraperExtractor(
                run, self.artifact_store, agent, credentials, self.repository, should_pause,
                max_entity_attempts=self.config.max_entity_attempts,
            )

        provider = self.provider or get_provider(run.source_vendor, **self.config.provider_options)
        connection = provider.test_connection(credentials)
        if not connection.connected:
            raise SourceAccessError(f"Connection to {run.source_vendor} failed: {connection.error_message}")
        return APIExtractor(
            run, self.artifact_store, provider, credentials, self.repository, should_pause,
            fetch_limit=self.config.fetch_limit,
        )

    def _data_refs(self, run: MigrationRun):
        """Entity artifacts only: no ``_``-prefixed outputs, no binaries."""
        return [
            ref for ref in self.artifact_store.list(run.id)
            if not ref.key.startswith("_") and "/" not in ref.key
        ]

    def _read_data_artifacts(self, run: MigrationRun) -> List[Tuple[str, List[Dict[str, Any]]]]:
        read = []
        for ref in self._data_refs(run):
            try:
                read.append((ref.key, load_records(ref.key, self.artifact_store.get(run.id, ref.key))))
            except ValueError as e:
                logger.warning(f"Skipping unreadable artifact {ref.key}: {e}")
        return read

    def _load_profile(self, run: MigrationRun) -> SourceProfile:
        return SourceProfile.from_dict(self.artifact_store.get_json(run.id, PROFILE_KEY))

    def _records_for(self, run: MigrationRun, profile: SourceProfile, entity_type: str) -> List[Dict[str, Any]]:
        entity = profile.entity(entity_type)
        if entity is None:
            return []
        return load_records(entity.source, self.artifact_store.get(run.id, entity.source))

    def _approved_spec(self, run: MigrationRun) -> MappingSpec:
        if run.mapping_approved_at is None:
            raise ApprovalRequiredError("Mapping spec must be approved before transform")
        spec = self.repository.get_spec(run.id, run.mapping_spec_version)
        if spec is None:
            raise MigrationError(f"Approved mapping spec v{run.mapping_spec_version} not found")
        return spec

    def _transform(
        self,
        run: MigrationRun,
        spec: MappingSpec,
        profile: SourceProfile,
    ) -> List[TransformOutcome]:
        engine = TransformEngine(run.clinic_id, run.source_vendor)
        classifications = {
            c["formSourceId"]: FormClassification.from_dict(c)
            for c in run.metadata.get("formClassifications", [])
        }

        outcomes = []
        for mapping in spec.entity_mappings:
            entity = profile.entity(mapping.source_entity)
            if entity is None:
                logger.warning(f"No artifact for mapped entity {mapping.source_entity}")
                continue
            records = load_records(entity.source, self.artifact_store.get(run.id, entity.source))
            outcomes.append(engine.transform_artifact(mapping.source_entity, records, mapping, classifications))
        return outcomes

    def _dry_validate(self, run: MigrationRun, spec: MappingSpec, profile: SourceProfile) -> Dict[str, Any]:
        """Transform and validate the first records of each canonical type, without writing anything."""
        try:
            outcomes = self._transform(run, spec, profile)
        except MappingSpecError as e:
            return {"passed": False, "error": str(e), "errors": e.errors}

        sampled: Dict[str, int] = {}
        records = []
        for record in (r for o in outcomes for r in o.records):
            if sampled.get(record.entity_type, 0) < self.config.dry_validation_sample:
                records.append(record)
                sampled[record.entity_type] = sampled.get(record.entity_type, 0) + 1
        validation = self.validator.validate(records, self._resolver(run))
        return {
            "passed": validation.passed,
            "sampleSize": self.config.dry_validation_sample,
            "summary": validation.summary,
            "report": validation.report,
            "transformFailures": sum(len(o.failed) for o in outcomes),
        }

    def _resolver(self, run: MigrationRun) -> Callable[[str, str], bool]:
        return lambda entity_type, canonical_id: (
            self.repository.find_by_canonical(run.id, entity_type, canonical_id) is not None
        )

    def _load_canonical(self, run: MigrationRun) -> List[CanonicalRecord]:
        return [CanonicalRecord.from_dict(d) for d in self.artifact_store.get_json(run.id, CANONICAL_KEY)]

    def _log_transform(
        self,
        run: MigrationRun,
        source_entity: str,
        source_id: str,
        status: LogStatus,
        reasoning: Optional[str] = None,
        error_message: Optional[str] = None,
        raw_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.repository.append_log(MigrationLogEntry(
            run_id=run.id,
            entity_type=source_entity,
            source_id=source_id,
            status=status,
            reasoning=reasoning,
            error_message=error_message,
            raw_data=raw_data,
            phase="transform",
        ))
