"""Command line interface for clinic migrations."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ApprovalRequiredError, MigrationError
from .models.migration import MigrationConfig, RunStatus
from .orchestrator import MigrationOrchestrator
from .services.form_classifier import classify_form
from .services.profiler import profile_artifacts
from .services.vault import generate_key

logger = logging.getLogger(__name__)


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Clinic Migration - Move clinic data between practice management platforms"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Run migration
    run_parser = subparsers.add_parser("run", help="Create a run and drive it to the approval gate")
    run_parser.add_argument("--config", required=True, help="Path to migration config file")
    run_parser.add_argument("--approve-as", help="Approve the drafted mapping as this user and finish the run")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Resume
    resume_parser = subparsers.add_parser("resume", help="Resume a paused or failed run")
    resume_parser.add_argument("--run-id", required=True, help="Run to resume")
    resume_parser.add_argument("--config", help="Path to migration config file")
    resume_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Approve
    approve_parser = subparsers.add_parser("approve", help="Approve the mapping spec and finish the run")
    approve_parser.add_argument("--run-id", required=True, help="Run waiting for approval")
    approve_parser.add_argument("--approver", required=True, help="Id of the approving user")
    approve_parser.add_argument("--config", help="Path to migration config file")
    approve_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Status
    status_parser = subparsers.add_parser("status", help="Show run status, events and log summary")
    status_parser.add_argument("--run-id", required=True, help="Run to inspect")
    status_parser.add_argument("--config", help="Path to migration config file")

    # Profile export files
    profile_parser = subparsers.add_parser("profile", help="Profile export files")
    profile_parser.add_argument("--input", required=True, nargs="+", help="CSV or JSON export files")
    profile_parser.add_argument("--output", help="Output file path")

    # Classify forms
    forms_parser = subparsers.add_parser("classify-forms", help="Classify submitted forms")
    forms_parser.add_argument("--input", required=True, help="Path to forms JSON file")

    # Key generation
    subparsers.add_parser("generate-key", help="Generate a credential encryption key")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    commands = {
        "run": run_migration,
        "resume": run_resume,
        "approve": run_approve,
        "status": show_status,
        "profile": run_profile,
        "classify-forms": run_classify_forms,
        "generate-key": run_generate_key,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        command(args)
    except ApprovalRequiredError as e:
        print(f"\n{e}")
        return 0
    except MigrationError as e:
        logger.error(str(e))
        return 1
    return 0


def load_config(path: Optional[str]) -> MigrationConfig:
    """Load a config file, or fall back to the environment."""
    if not path:
        return MigrationConfig.from_env()
    with open(path) as f:
        config_data = json.load(f)
    return MigrationConfig.from_env(**config_data)


def print_report(report: Dict[str, Any]):
    """Print a reconciliation report."""
    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE")
    print("=" * 60)
    print(f"Status: {report['status']}")
    print(f"Source Records: {report['totalSourceRecords']}")
    print(f"Promoted: {report['totalPromotedRecords']}")
    print(f"Failed: {report['totalFailedRecords']}")
    print(f"Completeness: {report['overallCompleteness']:.1%}")
    print(f"Pending Reviews: {report['pendingReviews']}")

    print("\nPer entity:")
    for entry in report["reconciliation"]:
        print(
            f"  {entry['entityType']}: {entry['sourceCount']} source, "
            f"{entry['promotedCount']} promoted, {entry['skippedCount']} skipped, "
            f"{entry['failedCount']} failed"
        )


def print_run(run):
    print(f"\nRun: {run.id}")
    print(f"Status: {run.status.value}")
    print(f"Phase: {run.current_phase.value}")
    if run.error_message:
        print(f"Error: {run.error_message}")
    if run.report:
        print_report(run.report)


def run_migration(args):
    """Create a run from a config file and drive it as far as it can go."""
    config = load_config(args.config)
    orchestrator = MigrationOrchestrator(config)

    run = orchestrator.create_run(
        clinic_id=config.clinic_id,
        vendor=config.source_vendor,
        credentials=config.credentials or None,
        entry_url=config.entry_url,
        uploaded_files=config.upload_paths,
        strategy=config.strategy,
    )
    run = orchestrator.run_to_approval(run.id)

    if args.approve_as and run.status == RunStatus.MAPPING_DRAFTED:
        orchestrator.approve_mapping(run.id, args.approve_as)
        run = orchestrator.run_from_approval(run.id)
    elif run.status == RunStatus.MAPPING_DRAFTED:
        print(f"\nMapping spec v{run.mapping_spec_version} drafted for run {run.id}")
        print(f"Review it, then run: clinic-migrate approve --run-id {run.id} --approver <id>")

    print_run(run)


def run_resume(args):
    """Resume a run from its interrupted phase."""
    orchestrator = MigrationOrchestrator(load_config(args.config))
    print_run(orchestrator.resume(args.run_id))


def run_approve(args):
    """Approve the drafted mapping spec and run the remaining phases."""
    orchestrator = MigrationOrchestrator(load_config(args.config))
    orchestrator.approve_mapping(args.run_id, args.approver)
    print_run(orchestrator.run_from_approval(args.run_id))


def show_status(args):
    orchestrator = MigrationOrchestrator(load_config(args.config))
    print(json.dumps(orchestrator.get_status(args.run_id), indent=2, default=str))


def run_profile(args):
    """Profile export files without creating a run."""
    artifacts = []
    for path in args.input:
        with open(path, "rb") as f:
            artifacts.append((Path(path).name, f.read()))

    output = profile_artifacts(artifacts).to_dict()

    if args.output:
        with open(args.output, 'w') as f:
            json.dump(output, f, indent=2)
        print(f"Profile saved to {args.output}")
    else:
        print(json.dumps(output, indent=2))


def run_classify_forms(args):
    """Classify forms as charts, intake forms or unknown."""
    with open(args.input) as f:
        forms = json.load(f)

    if not isinstance(forms, list):
        forms = [forms]

    for form in forms:
        print(json.dumps(classify_form(form).to_dict(), indent=2, default=str))
        print("-" * 40)


def run_generate_key(args):
    """Print a fresh key for MIGRATION_ENCRYPTION_KEY."""
    print(generate_key())


if __name__ == "__main__":
    sys.exit(main())
