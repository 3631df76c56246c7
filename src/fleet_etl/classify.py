"""fleet_etl.classify

Keyword classifiers mapping free-text Airtable status columns onto the
closed enums the application stores.

Each classifier is an ordered list of (value, keywords) rules.  Rules are
tried top to bottom; a rule matches when any of its keywords starts a word
in the lower-cased input ("cancel" matches "Cancelled", "resolved" does not
match "unresolved").  The first matching rule wins; no match returns the
classifier's default.  Classifiers never raise and never return anything
outside their enum.

The keyword lists were worked out from sample data rather than any written
contract, so they can be replaced from a YAML file:

    from pathlib import Path
    from fleet_etl.classify import load_classifier_rules, classify_repair_status

    rules = load_classifier_rules(Path("config/status_rules.yml"))
    classify_repair_status(["Resolved", None, None, "Open"], rules)
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from fleet_etl.normalize import as_text, parse_bool

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

VEHICLE_STATUSES = ("active", "in_service", "retired")
BOOKING_STATUSES = ("pending", "confirmed", "in_progress", "completed", "cancelled")
SERVICE_RECORD_STATUSES = ("scheduled", "in_progress", "completed", "cancelled")
REPAIR_URGENCIES = ("low", "medium", "high", "critical")
REPAIR_STATUSES = (
    "submitted", "triaged", "waiting_booking", "scheduled",
    "in_progress", "completed", "cancelled",
)
MEMBER_ROLES = ("admin", "mechanic", "driver", "customer")

CLASSIFIER_ENUMS: dict[str, tuple[str, ...]] = {
    "vehicle_status": VEHICLE_STATUSES,
    "booking_status": BOOKING_STATUSES,
    "service_record_status": SERVICE_RECORD_STATUSES,
    "repair_urgency": REPAIR_URGENCIES,
    "repair_status": REPAIR_STATUSES,
    "member_role": MEMBER_ROLES,
}


# ---------------------------------------------------------------------------
# Built-in rules
# ---------------------------------------------------------------------------

DEFAULT_RULES: dict[str, dict[str, Any]] = {
    "vehicle_status": {
        "default": "active",
        "rules": [
            {"value": "active", "keywords": ["up to date", "active"]},
            {"value": "in_service", "keywords": ["service", "maintenance", "repair", "shop"]},
            {"value": "retired", "keywords": ["retired", "inactive", "sold", "decommission"]},
        ],
    },
    "booking_status": {
        "default": "pending",
        "rules": [
            {"value": "confirmed", "keywords": ["confirm"]},
            {"value": "in_progress", "keywords": ["in progress", "progress"]},
            {"value": "completed", "keywords": ["complete", "done"]},
            {"value": "cancelled", "keywords": ["cancel", "no show"]},
        ],
    },
    "service_record_status": {
        "default": "completed",
        "rules": [
            {"value": "cancelled", "keywords": ["cancel", "void"]},
            {"value": "in_progress", "keywords": ["in progress", "progress", "open", "waiting"]},
            {"value": "scheduled", "keywords": ["scheduled", "booked", "upcoming"]},
            {"value": "completed", "keywords": ["complete", "done", "closed"]},
        ],
    },
    "repair_urgency": {
        "default": "low",
        "rules": [
            {"value": "critical", "keywords": ["critical", "emergency", "immediate", "urgent", "asap", "safety"]},
            {"value": "high", "keywords": ["high"]},
            {"value": "medium", "keywords": ["medium", "moderate", "normal"]},
            {"value": "low", "keywords": ["low", "minor", "cosmetic"]},
        ],
    },
    # Completion/closure first, then booking-link signals, then generic
    # progress.  Within a rule every status column is checked before moving on.
    "repair_status": {
        "default": "submitted",
        "rules": [
            {"value": "completed", "keywords": ["complete", "resolved", "closed", "done", "fixed", "repaired"]},
            {"value": "cancelled", "keywords": ["cancel", "void", "duplicate", "rejected"]},
            {"value": "scheduled", "keywords": ["scheduled", "booked", "appointment set"]},
            {"value": "waiting_booking", "keywords": ["booking link", "link sent", "awaiting booking", "waiting for booking", "needs booking"]},
            {"value": "in_progress", "keywords": ["in progress", "progress", "working", "in shop", "parts ordered"]},
            {"value": "triaged", "keywords": ["triage", "reviewed", "assigned"]},
        ],
    },
    "member_role": {
        "default": "customer",
        "rules": [
            {"value": "admin", "keywords": ["admin", "manager", "ceo", "owner"]},
            {"value": "mechanic", "keywords": ["mechanic", "technician", "tech"]},
            {"value": "driver", "keywords": ["driver", "operator", "crew"]},
            {"value": "customer", "keywords": ["customer"]},
        ],
    },
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RuleSetValidationError(ValueError):
    """Raised when a classifier rule file fails schema validation."""


# ---------------------------------------------------------------------------
# Rule dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KeywordRule:
    value: str
    keywords: tuple[str, ...]
    pattern: re.Pattern = field(compare=False, repr=False)

    @classmethod
    def build(cls, value: str, keywords: Iterable[str]) -> "KeywordRule":
        kws = tuple(k.strip().lower() for k in keywords)
        pattern = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in kws) + ")")
        return cls(value=value, keywords=kws, pattern=pattern)

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


@dataclass(frozen=True)
class Classifier:
    name: str
    default: str
    rules: tuple[KeywordRule, ...]

    def classify(self, *texts: str | None) -> str:
        """First rule matching any text wins; texts are checked in order."""
        lowered = [t.lower() for t in texts if t]
        for rule in self.rules:
            for text in lowered:
                if rule.matches(text):
                    return rule.value
        return self.default


@dataclass(frozen=True)
class ClassifierRules:
    classifiers: dict[str, Classifier]
    source_hash: str | None = None

    def __getitem__(self, name: str) -> Classifier:
        return self.classifiers[name]


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def validate_rules(data: Any) -> None:
    """Raise RuleSetValidationError if data does not match the rule schema.

    Validates:
      - Root is a mapping with an entry for every known classifier
      - default and every rule value belong to that classifier's enum
      - keyword lists are non-empty lists of non-blank strings
    """
    if not isinstance(data, dict):
        raise RuleSetValidationError("YAML root must be a mapping.")

    missing = set(CLASSIFIER_ENUMS) - set(data.keys())
    if missing:
        raise RuleSetValidationError(f"Missing classifiers: {sorted(missing)}")

    for name, enum in CLASSIFIER_ENUMS.items():
        section = data[name]
        if not isinstance(section, dict):
            raise RuleSetValidationError(f"'{name}' must be a mapping.")
        default = section.get("default")
        if default not in enum:
            raise RuleSetValidationError(
                f"'{name}' default {default!r} must be one of {list(enum)}."
            )
        rules = section.get("rules")
        if not isinstance(rules, list):
            raise RuleSetValidationError(f"'{name}.rules' must be a list.")
        for idx, rule in enumerate(rules):
            if not isinstance(rule, dict):
                raise RuleSetValidationError(f"'{name}.rules[{idx}]' must be a mapping.")
            if rule.get("value") not in enum:
                raise RuleSetValidationError(
                    f"'{name}.rules[{idx}]' value {rule.get('value')!r} "
                    f"must be one of {list(enum)}."
                )
            keywords = rule.get("keywords")
            if not isinstance(keywords, list) or not keywords:
                raise RuleSetValidationError(
                    f"'{name}.rules[{idx}].keywords' must be a non-empty list."
                )
            for kw in keywords:
                if not isinstance(kw, str) or not kw.strip():
                    raise RuleSetValidationError(
                        f"'{name}.rules[{idx}]' has a blank or non-string keyword: {kw!r}"
                    )


def build_rules(data: dict[str, Any], source_hash: str | None = None) -> ClassifierRules:
    validate_rules(data)
    classifiers = {
        name: Classifier(
            name=name,
            default=data[name]["default"],
            rules=tuple(
                KeywordRule.build(r["value"], r["keywords"]) for r in data[name]["rules"]
            ),
        )
        for name in CLASSIFIER_ENUMS
    }
    return ClassifierRules(classifiers=classifiers, source_hash=source_hash)


def load_classifier_rules(yaml_path: Path) -> ClassifierRules:
    """Load, validate, and return ClassifierRules from a YAML file.

    Raises:
        RuleSetValidationError: If any classifier is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise RuleSetValidationError(f"{yaml_path}: not valid YAML: {exc}") from exc
    return build_rules(data, hashlib.sha256(raw.encode("utf-8")).hexdigest())


DEFAULT_CLASSIFIER_RULES = build_rules(DEFAULT_RULES)


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------

def classify_vehicle_status(raw: Any, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> str:
    return rules["vehicle_status"].classify(as_text(raw))


def classify_booking_status(raw: Any, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> str:
    return rules["booking_status"].classify(as_text(raw))


def classify_service_record_status(
    raw: Any,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> str:
    return rules["service_record_status"].classify(as_text(raw))


def classify_member_role(raw: Any, rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES) -> str:
    return rules["member_role"].classify(as_text(raw))


def classify_repair_urgency(
    urgency_text: Any,
    requires_immediate: Any = False,
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> str:
    """The immediate-attention flag forces 'critical' whatever the text says."""
    if parse_bool(requires_immediate):
        return "critical"
    return rules["repair_urgency"].classify(as_text(urgency_text))


def classify_repair_status(
    status_fields: Iterable[Any],
    rules: ClassifierRules = DEFAULT_CLASSIFIER_RULES,
) -> str:
    """Classify up to four overlapping status columns, most authoritative first."""
    texts = [as_text(v) for v in list(status_fields)[:4]]
    return rules["repair_status"].classify(*texts)
