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
Parser for generated ICSR documents.

Recovers the populated fields of each safety report, keyed by the case-model field
names, so a generated document can be checked against the case it came from.
"""

import xml.etree.ElementTree as ET
from datetime import date, datetime
from typing import Any, Optional

from coreason_faers_submission.codec import tables
from coreason_faers_submission.config import FaersConfig

NS = {"hl7": FaersConfig.XML_NAMESPACE}
XSI_TYPE_ATTR = f"{{{FaersConfig.XSI_NAMESPACE}}}type"

_PATIENT_OBSERVATIONS = {
    "C25150": "patient_age",
    "C25208": "patient_weight",
    "C25347": "patient_height",
}


def _tag(element: ET.Element) -> str:
    return element.tag.split("}", 1)[-1]


def _find(element: ET.Element, path: str) -> Optional[ET.Element]:
    return element.find(path, NS)


def _text(element: ET.Element, path: str) -> Optional[str]:
    found = _find(element, path)
    return found.text if found is not None and found.text else None


def _date(value: str) -> date:
    return datetime.strptime(value, "%Y%m%d").date()


def _put(target: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        target[key] = value


def _read_address(entity: ET.Element, prefix: str, street_key: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    addr = _find(entity, "hl7:addr")
    if addr is None:
        return fields
    _put(fields, street_key, _text(addr, "hl7:streetAddressLine"))
    _put(fields, f"{prefix}city", _text(addr, "hl7:city"))
    _put(fields, f"{prefix}state", _text(addr, "hl7:state"))
    _put(fields, f"{prefix}postcode", _text(addr, "hl7:postalCode"))
    _put(fields, f"{prefix}country", _text(addr, "hl7:country"))
    return fields


def _read_telecoms(entity: ET.Element, prefix: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for telecom in entity.findall("hl7:telecom", NS):
        value = telecom.get("value", "")
        if value.startswith("tel:"):
            fields[f"{prefix}phone"] = value[len("tel:") :]
        elif value.startswith("mailto:"):
            fields[f"{prefix}email"] = value[len("mailto:") :]
    return fields


def _assigned_entity(author: ET.Element) -> ET.Element:
    entity = _find(author, "hl7:assignedEntity")
    if entity is None:
        raise ValueError("author element without assignedEntity")
    return entity


def _read_reporter(author: ET.Element) -> dict[str, Any]:
    entity = _assigned_entity(author)
    reporter: dict[str, Any] = {}
    code = _find(entity, "hl7:code")
    if code is not None:
        reporter["qualification"] = int(code.get("code", ""))
    reporter.update(_read_address(entity, "", "address"))
    reporter.update(_read_telecoms(entity, ""))
    _put(reporter, "title", _text(entity, "hl7:assignedPerson/hl7:name/hl7:prefix"))
    _put(reporter, "given_name", _text(entity, "hl7:assignedPerson/hl7:name/hl7:given"))
    _put(reporter, "family_name", _text(entity, "hl7:assignedPerson/hl7:name/hl7:family"))
    _put(reporter, "organization", _text(entity, "hl7:representedOrganization/hl7:name"))
    return reporter


def _read_sender(author: ET.Element) -> dict[str, Any]:
    entity = _assigned_entity(author)
    sender: dict[str, Any] = {}
    code = _find(entity, "hl7:code")
    if code is not None:
        sender["sender_type"] = int(code.get("code", ""))
    sender.update(_read_address(entity, "sender_", "sender_address"))
    sender.update(_read_telecoms(entity, "sender_"))
    _put(sender, "sender_given_name", _text(entity, "hl7:assignedPerson/hl7:name/hl7:given"))
    _put(sender, "sender_family_name", _text(entity, "hl7:assignedPerson/hl7:name/hl7:family"))
    _put(sender, "sender_organization", _text(entity, "hl7:representedOrganization/hl7:name"))
    _put(
        sender,
        "sender_department",
        _text(entity, "hl7:representedOrganization/hl7:assignedEntity/hl7:representedOrganization/hl7:name"),
    )
    return sender


def _read_reaction(observation: ET.Element) -> dict[str, Any]:
    reaction: dict[str, Any] = {}
    code = _find(observation, "hl7:code")
    if code is not None:
        _put(reaction, "meddra_code", code.get("code"))
        _put(reaction, "reaction_term", code.get("displayName"))
    low = _find(observation, "hl7:effectiveTime/hl7:low")
    high = _find(observation, "hl7:effectiveTime/hl7:high")
    if low is not None:
        reaction["start_date"] = _date(low.get("value", ""))
    if high is not None:
        reaction["end_date"] = _date(high.get("value", ""))

    for relationship in observation.findall("hl7:outboundRelationship2/hl7:observation", NS):
        kind = _find(relationship, "hl7:code")
        value = _find(relationship, "hl7:value")
        if kind is None or value is None:
            continue
        if kind.get("code") == "C83121":
            flags = tables.seriousness_flags(value.get("code", "").split(","))
            reaction.update({name: True for name, present in flags.items() if present})
        elif kind.get("code") == "C49489":
            reaction["outcome"] = int(value.get("code", ""))
    return reaction


def _read_drug(organizer: ET.Element) -> dict[str, Any]:
    drug: dict[str, Any] = {}
    characterization = _find(organizer, "hl7:code")
    if characterization is not None:
        drug["characterization"] = tables.DRUG_CHARACTERIZATION.reverse(characterization.get("code", ""))

    administration = _find(organizer, "hl7:component/hl7:substanceAdministration")
    if administration is None:
        return drug

    low = _find(administration, "hl7:effectiveTime/hl7:low")
    high = _find(administration, "hl7:effectiveTime/hl7:high")
    if low is not None:
        drug["start_date"] = _date(low.get("value", ""))
    if high is not None:
        drug["end_date"] = _date(high.get("value", ""))

    route = _find(administration, "hl7:routeCode")
    if route is not None:
        drug["route"] = tables.ROUTE_OF_ADMINISTRATION.reverse(route.get("code", ""))
    center = _find(administration, "hl7:doseQuantity/hl7:center")
    if center is not None:
        drug["dose"] = float(center.get("value", ""))
        drug["dose_unit"] = center.get("unit")

    product = _find(administration, "hl7:consumable/hl7:instanceOfKind/hl7:kindOfProduct")
    if product is not None:
        product_code = _find(product, "hl7:code")
        if product_code is not None:
            drug["mpid"] = product_code.get("code")
        _put(drug, "product_name", _text(product, "hl7:name"))

    coded_fields = {"C41341": "action_taken", "C49492": "dechallenge", "C49494": "rechallenge"}
    for relationship in administration.findall("hl7:outboundRelationship2/hl7:observation", NS):
        kind = _find(relationship, "hl7:code")
        value = _find(relationship, "hl7:value")
        if kind is None or value is None:
            continue
        if kind.get("code") == "C41331":
            _put(drug, "indication", value.get("displayName"))
            _put(drug, "indication_code", value.get("code"))
        elif kind.get("code") in coded_fields:
            drug[coded_fields[kind.get("code", "")]] = int(value.get("code", ""))
    return drug


def _read_patient(role: ET.Element, report: dict[str, Any]) -> None:
    player = _find(role, "hl7:player1")
    if player is not None:
        _put(report, "patient_initials", _text(player, "hl7:name/hl7:given"))
        gender = _find(player, "hl7:administrativeGenderCode")
        if gender is not None:
            report["patient_sex"] = tables.PATIENT_SEX.reverse(gender.get("code", ""))
        birth = _find(player, "hl7:birthTime")
        if birth is not None:
            report["patient_birthdate"] = _date(birth.get("value", ""))

    reactions: list[dict[str, Any]] = []
    drugs: list[dict[str, Any]] = []
    for subject in role.findall("hl7:subjectOf2", NS):
        organizer = _find(subject, "hl7:organizer")
        if organizer is not None:
            drugs.append(_read_drug(organizer))
            continue
        observation = _find(subject, "hl7:observation")
        if observation is None:
            continue
        code = _find(observation, "hl7:code")
        code_value = code.get("code") if code is not None else None
        value = _find(observation, "hl7:value")
        if code_value in _PATIENT_OBSERVATIONS and value is not None:
            report[_PATIENT_OBSERVATIONS[code_value]] = float(value.get("value", ""))
            if code_value == "C25150":
                report["patient_age_unit"] = tables.AGE_UNIT.reverse(value.get("unit", ""))
        elif code_value == "C28554":
            report["patient_death"] = value is not None and value.get("value") == "true"
            death_time = _find(observation, "hl7:effectiveTime")
            if death_time is not None:
                report["death_date"] = _date(death_time.get("value", ""))
        else:
            reactions.append(_read_reaction(observation))

    report["reactions"] = reactions
    report["drugs"] = drugs


def read_safety_report(event: ET.Element) -> dict[str, Any]:
    """Decode one ``investigationEvent`` element into populated case fields."""
    report: dict[str, Any] = {}
    for identifier in event.findall("hl7:id", NS):
        if identifier.get("root") == FaersConfig.OID_MESSAGE_ID:
            report["safety_report_id"] = identifier.get("extension")
        elif identifier.get("root") == FaersConfig.OID_REPORT_VERSION:
            report["version"] = int(identifier.get("extension", ""))

    report_type = _find(event, "hl7:code")
    if report_type is not None:
        report["report_type"] = int(report_type.get("code", ""))
    receipt = _find(event, "hl7:effectiveTime/hl7:low")
    if receipt is not None:
        report["receipt_date"] = _date(receipt.get("value", ""))

    # The sender is always the last author; any before it are primary sources.
    authors = event.findall("hl7:author", NS)
    report["reporters"] = [_read_reporter(author) for author in authors[:-1]]
    if authors:
        report.update(_read_sender(authors[-1]))

    role = _find(event, "hl7:subject/hl7:primaryRole")
    if role is not None:
        _read_patient(role, report)

    _put(
        report,
        "case_narrative",
        _text(event, "hl7:component/hl7:adverseEventAssessment/hl7:component/hl7:causalityAssessment/hl7:value"),
    )
    return report


def read_icsr(xml: str) -> dict[str, Any]:
    """
    Parse a single-case or batch ICSR document.

    Returns:
        A mapping with the envelope ``root`` tag, ``message_id``, ``creation_time``,
        ``receiver``, ``sender`` and a ``reports`` list (one entry per safety report).
    """
    root = ET.fromstring(xml.encode("utf-8"))
    document: dict[str, Any] = {"root": _tag(root)}

    message_id = _find(root, "hl7:id")
    document["message_id"] = message_id.get("extension") if message_id is not None else None
    creation = _find(root, "hl7:creationTime")
    document["creation_time"] = creation.get("value") if creation is not None else None
    receiver = _find(root, "hl7:receiver/hl7:device/hl7:id")
    document["receiver"] = receiver.get("extension") if receiver is not None else None
    sender = _find(root, "hl7:sender/hl7:device/hl7:id")
    document["sender"] = sender.get("extension") if sender is not None else None

    events = root.findall("hl7:controlActProcess/hl7:subject/hl7:investigationEvent", NS)
    document["reports"] = [read_safety_report(event) for event in events]
    return document
