# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Command-line entry point for the FAERS submission pipeline."""

import argparse
import json
import os
import sys
from pathlib import Path

from coreason_faers_submission.codec.generator import IcsrXmlGenerator
from coreason_faers_submission.config import EsgSettings, FaersConfig
from coreason_faers_submission.domain.enums import MarketType
from coreason_faers_submission.domain.models import Case
from coreason_faers_submission.domain.results import GenerationOptions
from coreason_faers_submission.esg.client import EsgApiClient
from coreason_faers_submission.esg.poller import AcknowledgmentPoller
from coreason_faers_submission.esg.submission import SubmissionService
from coreason_faers_submission.export import LocalExportStore
from coreason_faers_submission.lifecycle.batch_service import BatchService
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import CaseRepository
from coreason_faers_submission.utils.logger import logger, mask_pii
from coreason_faers_submission.validation.engine import ValidationEngine


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="FAERS ICSR Submission Pipeline")
    parser.add_argument(
        "--database-url",
        type=str,
        default=os.getenv("FAERS_DATABASE_URL", FaersConfig.DEFAULT_DATABASE_URL),
        help="SQLAlchemy URL of the case store",
    )
    parser.add_argument(
        "--export-dir",
        type=Path,
        default=FaersConfig.DEFAULT_EXPORT_DIR,
        help="Directory for exported batch documents",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    load = commands.add_parser("import", help="Load a case from a JSON file")
    load.add_argument("path", type=Path)

    validate = commands.add_parser("validate", help="Run the validation rules over a case")
    validate.add_argument("case_id")

    generate = commands.add_parser("generate", help="Generate the ICSR XML for a case")
    generate.add_argument("case_id")
    generate.add_argument("--output", type=Path, default=None, help="Write to this file instead of stdout")
    generate.add_argument(
        "--market",
        choices=[m.value.lower() for m in MarketType],
        default=MarketType.POSTMARKET.value.lower(),
        help="Selects the batch receiver (routing identifier)",
    )

    submit = commands.add_parser("submit", help="Submit a case or an exported batch to the ESG")
    target = submit.add_mutually_exclusive_group(required=True)
    target.add_argument("--case", dest="case_id")
    target.add_argument("--batch", dest="batch_id", type=int)

    poll = commands.add_parser("poll", help="Poll the ESG for acknowledgments")
    poll.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")

    return parser.parse_args(args)


def _market(value: str) -> MarketType:
    return next(m for m in MarketType if m.value.lower() == value)


def run_command(parsed: argparse.Namespace) -> int:
    """
    Execute the selected subcommand.

    Returns:
        The process exit code.
    """
    database = Database(parsed.database_url)
    database.create_all()
    cases = CaseRepository()
    try:
        if parsed.command == "import":
            case = Case.model_validate(json.loads(parsed.path.read_text(encoding="utf-8")))
            with database.session() as session:
                cases.add(session, case)
            logger.info(
                f"Imported case {case.id} "
                f"(patient {mask_pii(case.patient_initials)}, sender {mask_pii(case.sender_email)})"
            )
            return 0

        if parsed.command == "validate":
            with database.session() as session:
                case = cases.get(session, parsed.case_id)
            result = ValidationEngine().validate(case)
            for issue in result.errors:
                print(f"{issue.severity.value.upper():8} {issue.field}: {issue.message}")
            return 0 if result.valid else 1

        settings = EsgSettings()
        generator = IcsrXmlGenerator(default_sender_id=settings.sender_id)

        if parsed.command == "generate":
            with database.session() as session:
                case = cases.get(session, parsed.case_id)
            generated = generator.generate_for_case(case, GenerationOptions(market_type=_market(parsed.market)))
            for warning in generated.warnings:
                logger.warning(warning)
            if not generated.success:
                for error in generated.errors:
                    logger.error(error)
                return 1
            if parsed.output:
                parsed.output.write_text(generated.xml, encoding="utf-8")
                logger.info(f"Wrote {parsed.output}")
            else:
                sys.stdout.write(generated.xml)
            return 0

        client = EsgApiClient(settings)
        batch_service = BatchService(database, generator, LocalExportStore(parsed.export_dir))

        if parsed.command == "submit":
            service = SubmissionService(database, client, generator, batch_service=batch_service)
            if parsed.batch_id is not None:
                outcome = service.submit_batch(parsed.batch_id)
            else:
                outcome = service.submit_case(
                    parsed.case_id,
                    progress=lambda p: logger.info(f"{p.current_step.value} ({p.steps_completed}/{p.total_steps})"),
                )
            if not outcome.success:
                logger.error(f"Submission failed after {outcome.attempts} attempt(s): {outcome.error}")
                return 1
            logger.info(f"Submitted; ESG core id {outcome.esg_core_id}")
            return 0

        poller = AcknowledgmentPoller(database, client, batch_service=batch_service)
        if parsed.once:
            status = poller.poll_once()
            logger.info(
                f"Checked {status.cases_checked} case(s): {status.acknowledged} acknowledged, "
                f"{status.rejected} rejected, {status.needs_attention} need attention"
            )
            return 1 if status.errors else 0
        poller.start()
        try:
            poller.wait()
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            poller.stop()
        return 0
    finally:
        database.dispose()


def main(args: list[str] | None = None) -> None:
    """Main entry point for the pipeline."""
    parsed_args = parse_args(args)

    logger.info(f"Starting FAERS submission pipeline: {parsed_args.command}")

    try:
        code = run_command(parsed_args)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":  # pragma: no cover
    main()
