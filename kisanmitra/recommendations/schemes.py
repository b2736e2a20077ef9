"""Government scheme field extraction.

Structured metadata (eligibility, benefits, application_process) is used when
the corpus provides it; free text is parsed heuristically otherwise.
"""

import re

from pydantic import BaseModel

from kisanmitra.knowledge.models import KnowledgeItem

SCHEME_FIELDS = ("eligibility", "benefits", "application_process")

ADDITIONAL_RESOURCES = [
    "Contact your local Krishi Vigyan Kendra for more information",
    "Visit the official PM-KISAN portal at pmkisan.gov.in",
    "Download the Kisan Suvidha mobile app for more government schemes",
]

# Section header followed by text up to the next full stop
_SECTION_PATTERNS = {
    "eligibility": (("eligibility", "eligible"), re.compile(r"eligibility[:|\s]\s*([^.]*)", re.I)),
    "benefits": (("benefit", "provides"), re.compile(r"benefits[:|\s]\s*([^.]*)", re.I)),
    "application_process": (("apply", "application"), re.compile(r"apply[:|\s]\s*([^.]*)", re.I)),
}


class SchemeInfo(BaseModel):
    """A government scheme as presented to the farmer."""

    id: str
    name: str
    description: str
    eligibility: str = ""
    benefits: str = ""
    application_process: str = ""
    extraction: str = "heuristic"  # structured, heuristic or mixed


def split_name(text: str) -> tuple[str, str]:
    """First line is the scheme name, the rest its description."""
    lines = text.strip().split("\n")
    name = lines[0].strip() if lines and lines[0].strip() else "Unknown Scheme"
    description = "\n".join(lines[1:]).strip() or text.strip()
    return name, description


def extract_section(description: str, field: str) -> str:
    """Heuristic: the sentence following a section header, or ''."""
    triggers, pattern = _SECTION_PATTERNS[field]
    lowered = description.lower()
    if not any(trigger in lowered for trigger in triggers):
        return ""
    match = pattern.search(description)
    return match.group(1).strip() if match else ""


def extract_scheme(item: KnowledgeItem) -> SchemeInfo:
    """Build a SchemeInfo, structured fields first."""
    name, description = split_name(item.text)
    name = item.metadata.get("name") or name

    values: dict[str, str] = {}
    structured = 0
    for field in SCHEME_FIELDS:
        value = item.metadata.get(field)
        if isinstance(value, str) and value.strip():
            values[field] = value.strip()
            structured += 1
        else:
            values[field] = extract_section(description, field)

    if structured == len(SCHEME_FIELDS):
        extraction = "structured"
    elif structured:
        extraction = "mixed"
    else:
        extraction = "heuristic"

    return SchemeInfo(
        id=item.id,
        name=name,
        description=description,
        extraction=extraction,
        **values,
    )


def build_scheme_query(farmer_type: str = "all", crop_type: str = "all", state: str = "all") -> str:
    """Free-text query from the filters that are not 'all'."""
    query = "government scheme"
    if farmer_type and farmer_type != "all":
        query += f" for {farmer_type} farmers"
    if crop_type and crop_type != "all":
        query += f" growing {crop_type}"
    if state and state != "all":
        query += f" in {state}"
    return query
