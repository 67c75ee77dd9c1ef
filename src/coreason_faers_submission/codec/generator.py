# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""
E2B(R3) ICSR XML generation.

The generator is a pure function of its inputs: given the same case data and the same
``GenerationOptions`` (creation time and message id included) it produces byte-identical
output. It performs no I/O; writing the document is the caller's job.
"""

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Final, Optional

from coreason_faers_submission.codec import tables
from coreason_faers_submission.codec.tree import Element, format_date, format_number, format_timestamp
from coreason_faers_submission.config import FaersConfig
from coreason_faers_submission.domain.enums import MarketType
from coreason_faers_submission.domain.models import Case, Drug, Reaction, Reporter
from coreason_faers_submission.domain.results import BatchGenerationResult, GenerationOptions, GenerationResult
from coreason_faers_submission.exceptions import CodeMappingError
from coreason_faers_submission.utils.logger import logger

XSI_TYPE: Final[str] = "xsi:type"
NCI: Final[str] = FaersConfig.OID_NCI_THESAURUS
E2B: Final[str] = FaersConfig.OID_E2B_CODES

ROUTING_IDENTIFIERS: Final[dict[MarketType, str]] = {
    MarketType.POSTMARKET: FaersConfig.RECEIVER_POSTMARKET,
    MarketType.PREMARKET: FaersConfig.RECEIVER_PREMARKET,
}


def routing_identifier(market_type: MarketType) -> str:
    """Batch receiver (N.1.4) for a pre/post-market classification."""
    return ROUTING_IDENTIFIERS[market_type]


def check_preconditions(case: Case, reactions: Sequence[Reaction], drugs: Sequence[Drug]) -> list[str]:
    """Structural requirements for a well-formed document, independent of business validation."""
    errors = []
    if not reactions:
        errors.append("At least one reaction is required")
    if not drugs:
        errors.append("At least one drug is required")
    if not (case.case_narrative or "").strip():
        errors.append("Case narrative is required")
    return errors


def _observation(code: str, display_name: str, code_system: str = NCI) -> Element:
    observation = Element("observation", {"classCode": "OBS", "moodCode": "EVN"})
    observation.add("code", {"code": code, "codeSystem": code_system, "displayName": display_name})
    return observation


def _address(
    street: Optional[str],
    city: Optional[str],
    state: Optional[str],
    postcode: Optional[str],
    country: Optional[str],
) -> Optional[Element]:
    if not any((street, city, state, postcode, country)):
        return None
    addr = Element("addr")
    addr.add_text("streetAddressLine", street)
    addr.add_text("city", city)
    addr.add_text("state", state)
    addr.add_text("postalCode", postcode)
    addr.add_text("country", country)
    return addr


def _telecoms(parent: Element, phone: Optional[str], email: Optional[str]) -> None:
    if phone:
        parent.add("telecom", {"value": f"tel:{phone}"})
    if email:
        parent.add("telecom", {"value": f"mailto:{email}"})


def _organization(name: str) -> Element:
    org = Element("representedOrganization", {"classCode": "ORG", "determinerCode": "INSTANCE"})
    org.add("name", text=name)
    return org


class IcsrXmlGenerator:
    """Builds single-case ICSR documents and multi-case batch envelopes."""

    def __init__(self, default_sender_id: str = FaersConfig.DEFAULT_SENDER_ID) -> None:
        self.default_sender_id = default_sender_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate(
        self,
        case: Case,
        reporters: Sequence[Reporter],
        reactions: Sequence[Reaction],
        drugs: Sequence[Drug],
        options: Optional[GenerationOptions] = None,
    ) -> GenerationResult:
        """
        Generate a single-case ICSR document.

        Args:
            case: The case header data (A.1, A.3, B.1, B.5).
            reporters: Primary sources, rendered in order.
            reactions: Reactions, rendered in order.
            drugs: Drugs, rendered in order.
            options: Routing and determinism options.

        Returns:
            A ``GenerationResult``. ``xml`` is only set when ``success`` is True.
        """
        options = options or GenerationOptions()
        receiver = routing_identifier(options.market_type)

        errors = check_preconditions(case, reactions, drugs)
        warnings = self._warnings(case, reporters)
        if errors:
            logger.warning(f"XML generation preconditions failed for case {case.id}: {errors}")
            return GenerationResult(success=False, errors=errors, warnings=warnings)

        creation_time = options.creation_time or datetime.now(timezone.utc)
        message_id = options.message_id or str(uuid.uuid4())
        sender_id = options.sender_identifier or case.sender_organization or self.default_sender_id

        try:
            root = Element(
                "ichicsr",
                {"lang": "en", "xmlns": FaersConfig.XML_NAMESPACE, "xmlns:xsi": FaersConfig.XSI_NAMESPACE},
            )
            self._build_header(root, FaersConfig.OID_MESSAGE_ID, message_id, creation_time, receiver, sender_id)

            control_act = root.add("controlActProcess", {"classCode": "CACT", "moodCode": "EVN"})
            control_act.add(
                "code", {"code": FaersConfig.CONTROL_ACT_CODE, "codeSystem": FaersConfig.OID_CONTROL_ACT}
            )
            subject = control_act.add("subject", {"typeCode": "SUBJ"})
            subject.append(self.build_safety_report(case, reporters, reactions, drugs, creation_time))
        except CodeMappingError as e:
            logger.error(f"XML generation failed for case {case.id}: {e}")
            return GenerationResult(success=False, errors=[f"XML generation failed: {e}"], warnings=warnings)

        xml = root.render()
        logger.info(f"Generated ICSR XML for case {case.id} ({len(xml)} chars, receiver {receiver})")
        return GenerationResult(success=True, xml=xml, warnings=warnings, batch_receiver=receiver)

    def generate_for_case(self, case: Case, options: Optional[GenerationOptions] = None) -> GenerationResult:
        """Generate from a fully loaded case aggregate."""
        return self.generate(case, case.reporters, case.reactions, case.drugs, options)

    def generate_batch(
        self,
        cases: Sequence[Case],
        options: Optional[GenerationOptions] = None,
        batch_number: Optional[str] = None,
    ) -> BatchGenerationResult:
        """
        Generate one batch envelope containing a body per case.

        Cases that fail their preconditions or code mapping are left out and reported in
        ``case_errors``; the batch only fails when no body could be built.
        """
        options = options or GenerationOptions()
        receiver = routing_identifier(options.market_type)
        creation_time = options.creation_time or datetime.now(timezone.utc)
        if options.message_id:
            message_id = options.message_id
        elif batch_number:
            stamp = creation_time if creation_time.tzinfo else creation_time.replace(tzinfo=timezone.utc)
            message_id = f"MSG-{batch_number}-{int(stamp.timestamp() * 1000)}"
        else:
            message_id = str(uuid.uuid4())
        sender_id = options.sender_identifier or self.default_sender_id

        bodies: list[Element] = []
        included: list[str] = []
        case_errors: dict[str, list[str]] = {}
        warnings: list[str] = []

        for case in cases:
            errors = check_preconditions(case, case.reactions, case.drugs)
            if errors:
                case_errors[case.id] = errors
                continue
            try:
                report = self.build_safety_report(case, case.reporters, case.reactions, case.drugs, creation_time)
            except CodeMappingError as e:
                case_errors[case.id] = [f"XML generation failed: {e}"]
                continue

            control_act = Element("controlActProcess", {"classCode": "ACTN", "moodCode": "EVN"})
            control_act.add("code", {"code": "ICSR"})
            control_act.add("subject", {"typeCode": "SUBJ"}).append(report)
            bodies.append(control_act)
            included.append(case.id)
            warnings.extend(f"{case.id}: {w}" for w in self._warnings(case, case.reporters))

        for case_id, errors in case_errors.items():
            logger.warning(f"Case {case_id} excluded from batch {batch_number or message_id}: {errors}")

        if not bodies:
            return BatchGenerationResult(
                success=False,
                case_errors=case_errors,
                errors=["No valid cases to include in batch"],
                warnings=warnings,
            )

        root = Element(
            "MCCI_IN200100UV01",
            {
                "xmlns": FaersConfig.XML_NAMESPACE,
                "xmlns:xsi": FaersConfig.XSI_NAMESPACE,
                "ITSVersion": "XML_1.0",
            },
        )
        self._build_header(root, FaersConfig.OID_BATCH_ID, message_id, creation_time, receiver, sender_id)
        for body in bodies:
            root.append(body)

        xml = root.render()
        logger.info(f"Generated batch XML {message_id} with {len(bodies)} of {len(cases)} cases")
        return BatchGenerationResult(
            success=True,
            xml=xml,
            included_case_ids=included,
            case_errors=case_errors,
            warnings=warnings,
            batch_receiver=receiver,
        )

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    @staticmethod
    def _warnings(case: Case, reporters: Sequence[Reporter]) -> list[str]:
        warnings = []
        if not case.receipt_date:
            warnings.append("Receipt date is recommended")
        if not reporters:
            warnings.append("At least one reporter is recommended")
        return warnings

    @staticmethod
    def _build_header(
        root: Element,
        id_root: str,
        message_id: str,
        creation_time: datetime,
        receiver: str,
        sender_id: str,
    ) -> None:
        """Message header (N.1 / N.2): identity, timing, interaction, receiver then sender."""
        root.add("id", {"root": id_root, "extension": message_id})
        root.add("creationTime", {"value": format_timestamp(creation_time)})
        root.add("responseModeCode", {"code": "D"})
        root.add("interactionId", {"root": FaersConfig.OID_INTERACTION, "extension": FaersConfig.INTERACTION_ID})
        root.add("processingCode", {"code": "P"})
        root.add("processingModeCode", {"code": "T"})
        root.add("acceptAckCode", {"code": "AL"})

        device = {"classCode": "DEV", "determinerCode": "INSTANCE"}
        root.add("receiver", {"typeCode": "RCV"}).add("device", device).add(
            "id", {"root": FaersConfig.OID_RECEIVER_ID, "extension": receiver}
        )
        root.add("sender", {"typeCode": "SND"}).add("device", device).add(
            "id", {"root": FaersConfig.OID_SENDER_ID, "extension": sender_id}
        )

    def build_safety_report(
        self,
        case: Case,
        reporters: Sequence[Reporter],
        reactions: Sequence[Reaction],
        drugs: Sequence[Drug],
        creation_time: datetime,
    ) -> Element:
        """
        Build the ``investigationEvent`` body for one case.

        Raises:
            CodeMappingError: If an enumerated code has no table entry and no fallback.
        """
        event = Element("investigationEvent", {"classCode": "INVSTG", "moodCode": "EVN"})

        # Safety report identity (A.1.0.1) and version
        event.add("id", {"root": FaersConfig.OID_MESSAGE_ID, "extension": case.report_identifier})
        event.add("id", {"root": FaersConfig.OID_REPORT_VERSION, "extension": case.version})

        if case.report_type is not None:
            code = tables.REPORT_TYPE.lookup(case.report_type, "report_type")
            event.add("code", {"code": code, "codeSystem": f"{E2B}.2"})

        if case.receipt_date:
            event.add("effectiveTime").add("low", {"value": format_date(case.receipt_date)})

        event.add("availabilityTime", {"value": format_timestamp(creation_time)})

        for reporter in reporters:
            event.append(self._build_reporter(reporter))
        event.append(self._build_sender(case))
        event.append(self._build_patient(case, reactions, drugs))
        event.append(self._build_narrative(case))
        return event

    @staticmethod
    def _build_reporter(reporter: Reporter) -> Element:
        """Primary source (A.2)."""
        author = Element("author", {"typeCode": "AUT"})
        entity = author.add("assignedEntity", {"classCode": "ASSIGNED"})

        if reporter.qualification is not None:
            code = tables.REPORTER_QUALIFICATION.lookup(reporter.qualification, "reporter.qualification")
            entity.add("code", {"code": code, "codeSystem": f"{E2B}.6"})

        entity.append(
            _address(reporter.address, reporter.city, reporter.state, reporter.postcode, reporter.country)
        )
        _telecoms(entity, reporter.phone, reporter.email)

        name = entity.add("assignedPerson", {"classCode": "PSN", "determinerCode": "INSTANCE"}).add("name")
        name.add_text("prefix", reporter.title)
        name.add_text("given", reporter.given_name)
        name.add_text("family", reporter.family_name)

        if reporter.organization:
            entity.append(_organization(reporter.organization))
        return author

    @staticmethod
    def _build_sender(case: Case) -> Element:
        """Sender (A.3)."""
        author = Element("author", {"typeCode": "AUT"})
        entity = author.add("assignedEntity", {"classCode": "ASSIGNED"})

        if case.sender_type is not None:
            code = tables.SENDER_TYPE.lookup(case.sender_type, "sender_type")
            entity.add("code", {"code": code, "codeSystem": f"{E2B}.7"})

        entity.append(
            _address(
                case.sender_address,
                case.sender_city,
                case.sender_state,
                case.sender_postcode,
                case.sender_country,
            )
        )
        _telecoms(entity, case.sender_phone, case.sender_email)

        name = entity.add("assignedPerson", {"classCode": "PSN", "determinerCode": "INSTANCE"}).add("name")
        name.add_text("given", case.sender_given_name)
        name.add_text("family", case.sender_family_name)

        if case.sender_organization:
            org = _organization(case.sender_organization)
            if case.sender_department:
                org.add("assignedEntity", {"classCode": "ASSIGNED"}).append(_organization(case.sender_department))
            entity.append(org)
        return author

    def _build_patient(self, case: Case, reactions: Sequence[Reaction], drugs: Sequence[Drug]) -> Element:
        """Patient (B.1), followed by its reactions (B.2) and drugs (B.4)."""
        subject = Element("subject", {"typeCode": "SBJ"})
        role = subject.add("primaryRole", {"classCode": "INVSBJ"})

        player = role.add("player1", {"classCode": "PSN", "determinerCode": "INSTANCE"})
        if case.patient_initials:
            player.add("name").add("given", text=case.patient_initials)
        if case.patient_sex is not None:
            sex = tables.PATIENT_SEX.lookup(case.patient_sex, "patient_sex")
            player.add(
                "administrativeGenderCode",
                {"code": sex, "codeSystem": FaersConfig.OID_ADMINISTRATIVE_GENDER},
            )
        if case.patient_birthdate:
            player.add("birthTime", {"value": format_date(case.patient_birthdate)})

        if case.patient_age is not None:
            unit = tables.AGE_UNIT.lookup(case.patient_age_unit or tables.DEFAULT_AGE_UNIT, "patient_age_unit")
            role.append(self._patient_observation("C25150", "Age", case.patient_age, unit))
        if case.patient_weight is not None:
            role.append(self._patient_observation("C25208", "Weight", case.patient_weight, "kg"))
        if case.patient_height is not None:
            role.append(self._patient_observation("C25347", "Height", case.patient_height, "cm"))

        if case.patient_death:
            observation = _observation("C28554", "Death")
            observation.add("value", {XSI_TYPE: "BL", "value": "true"})
            if case.death_date:
                observation.add("effectiveTime", {"value": format_date(case.death_date)})
            wrapper = role.add("subjectOf2", {"typeCode": "SBJ"})
            wrapper.append(observation)

        for reaction in reactions:
            role.append(self._build_reaction(reaction))
        for drug in drugs:
            role.append(self._build_drug(drug))
        return subject

    @staticmethod
    def _patient_observation(code: str, display_name: str, value: float, unit: str) -> Element:
        observation = _observation(code, display_name)
        observation.add("value", {XSI_TYPE: "PQ", "value": format_number(value), "unit": unit})
        wrapper = Element("subjectOf2", {"typeCode": "SBJ"})
        wrapper.append(observation)
        return wrapper

    @staticmethod
    def _build_reaction(reaction: Reaction) -> Element:
        """Reaction / event (B.2.i)."""
        wrapper = Element("subjectOf2", {"typeCode": "SBJ"})
        observation = wrapper.add("observation", {"classCode": "OBS", "moodCode": "EVN"})

        if reaction.meddra_code:
            observation.add(
                "code",
                {
                    "code": reaction.meddra_code,
                    "codeSystem": FaersConfig.OID_MEDDRA,
                    "displayName": reaction.reaction_term,
                },
            )
        else:
            observation.add("code", {"displayName": reaction.reaction_term})

        if reaction.start_date or reaction.end_date:
            effective = observation.add("effectiveTime")
            if reaction.start_date:
                effective.add("low", {"value": format_date(reaction.start_date)})
            if reaction.end_date:
                effective.add("high", {"value": format_date(reaction.end_date)})

        seriousness = _observation("C83121", "Seriousness")
        codes = tables.seriousness_codes(reaction)
        if codes:
            seriousness.add("value", {XSI_TYPE: "CE", "code": ",".join(codes), "codeSystem": f"{E2B}.19"})
        observation.add("outboundRelationship2", {"typeCode": "PERT"}).append(seriousness)

        if reaction.outcome is not None:
            code = tables.REACTION_OUTCOME.lookup(reaction.outcome, "reaction.outcome")
            outcome = _observation("C49489", "Outcome")
            outcome.add("value", {XSI_TYPE: "CE", "code": code, "codeSystem": f"{E2B}.11"})
            observation.add("outboundRelationship2", {"typeCode": "PERT"}).append(outcome)
        return wrapper

    @staticmethod
    def _coded_relationship(
        type_code: str, code: str, display_name: str, value_code: str, value_system: str
    ) -> Element:
        observation = _observation(code, display_name)
        observation.add("value", {XSI_TYPE: "CE", "code": value_code, "codeSystem": value_system})
        relationship = Element("outboundRelationship2", {"typeCode": type_code})
        relationship.append(observation)
        return relationship

    def _build_drug(self, drug: Drug) -> Element:
        """Drug (B.4.k); only the first dosage row contributes route and dose."""
        characterization = tables.DRUG_CHARACTERIZATION.lookup(drug.characterization, "drug.characterization")

        wrapper = Element("subjectOf2", {"typeCode": "SBJ"})
        organizer = wrapper.add("organizer", {"classCode": "CATEGORY", "moodCode": "EVN"})
        organizer.add("code", {"code": characterization, "codeSystem": f"{E2B}.13"})
        administration = organizer.add("component", {"typeCode": "COMP"}).add(
            "substanceAdministration", {"classCode": "SBADM", "moodCode": "EVN"}
        )

        if drug.start_date or drug.end_date:
            effective = administration.add("effectiveTime", {XSI_TYPE: "IVL_TS"})
            if drug.start_date:
                effective.add("low", {"value": format_date(drug.start_date)})
            if drug.end_date:
                effective.add("high", {"value": format_date(drug.end_date)})

        dosage = drug.dosages[0] if drug.dosages else None
        if dosage is not None and dosage.route:
            route = tables.ROUTE_OF_ADMINISTRATION.lookup(dosage.route, "dosage.route")
            administration.add("routeCode", {"code": route, "codeSystem": f"{E2B}.14"})
        if dosage is not None and dosage.dose is not None:
            administration.add("doseQuantity").add(
                "center", {"value": format_number(dosage.dose), "unit": dosage.dose_unit or "unit"}
            )

        product = (
            administration.add("consumable", {"typeCode": "CSM"})
            .add("instanceOfKind", {"classCode": "INST"})
            .add("kindOfProduct", {"classCode": "MMAT", "determinerCode": "KIND"})
        )
        if drug.mpid:
            product.add("code", {"code": drug.mpid, "codeSystem": FaersConfig.OID_PRODUCT_ID})
        product.add("name", text=drug.product_name)

        if drug.indication:
            indication = _observation("C41331", "Indication")
            indication.add(
                "value",
                {
                    XSI_TYPE: "CE",
                    "code": drug.indication_code,
                    "codeSystem": FaersConfig.OID_MEDDRA if drug.indication_code else None,
                    "displayName": drug.indication,
                },
            )
            administration.add("outboundRelationship2", {"typeCode": "RSON"}).append(indication)

        if drug.action_taken is not None:
            code = tables.ACTION_TAKEN.lookup(drug.action_taken, "drug.action_taken")
            administration.append(self._coded_relationship("COMP", "C41341", "Action Taken", code, f"{E2B}.15"))
        if drug.dechallenge is not None:
            code = tables.CHALLENGE_RESULT.lookup(drug.dechallenge, "drug.dechallenge")
            administration.append(self._coded_relationship("COMP", "C49492", "Dechallenge", code, f"{E2B}.16"))
        if drug.rechallenge is not None:
            code = tables.CHALLENGE_RESULT.lookup(drug.rechallenge, "drug.rechallenge")
            administration.append(self._coded_relationship("COMP", "C49494", "Rechallenge", code, f"{E2B}.17"))
        return wrapper

    @staticmethod
    def _build_narrative(case: Case) -> Optional[Element]:
        """Case narrative (B.5.1)."""
        if not (case.case_narrative or "").strip():
            return None
        component = Element("component", {"typeCode": "COMP"})
        assessment = component.add("adverseEventAssessment", {"classCode": "INVSTG", "moodCode": "EVN"})
        causality = assessment.add("component", {"typeCode": "COMP"}).add(
            "causalityAssessment", {"classCode": "OBS", "moodCode": "EVN"}
        )
        causality.add("code", {"code": "C53253", "codeSystem": NCI, "displayName": "Case Narrative"})
        causality.add("value", {XSI_TYPE: "ED"}, text=case.case_narrative)
        return component
