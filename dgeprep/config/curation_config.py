"""
Sample curation configuration with Pydantic validation.

The curation stage is fully described by one ``CurationConfig``: which
columns identify and describe a sample, which rows survive, and how the
group label is derived. The configuration is usually kept next to the
study as a JSON file so the curation step can be re-run unchanged.

Example:
    >>> from dgeprep.config.curation_config import CurationConfig
    >>> config = CurationConfig(
    ...     id_column="sample_id",
    ...     retain_columns=["sample_id", "disease_status", "age", "tumor_type"],
    ...     inclusion_rules=[
    ...         {"column": "consent_withdrawn", "operator": "is_missing"},
    ...         {"column": "age", "operator": "ge", "value": 18},
    ...     ],
    ...     annotation_column="tumor_type",
    ...     label_rules=[
    ...         {"pattern": "Astro", "label": "AST"},
    ...         {"pattern": "Glioma", "label": "GLI"},
    ...     ],
    ... )
    >>> config.save(Path("curation.json"))
"""

import json
import re
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)

VALID_OPERATORS = [
    "eq",
    "ne",
    "in",
    "not_in",
    "ge",
    "gt",
    "le",
    "lt",
    "is_missing",
    "not_missing",
    "contains",
]

# Operators that compare against a number
ORDERED_OPERATORS = ["ge", "gt", "le", "lt"]

# Operators that need no value
UNARY_OPERATORS = ["is_missing", "not_missing"]

VALID_MATCH_MODES = ["contains", "prefix", "regex"]


class InclusionRule(BaseModel):
    """
    One row-inclusion predicate.

    A row survives curation only if it satisfies every rule.

    Attributes:
        column: Column the predicate reads
        operator: Comparison operator (eq | ne | in | not_in | ge | gt | le |
            lt | is_missing | not_missing | contains)
        value: Comparison value; a list for ``in``/``not_in``, a number for
            ordered operators, unused for ``is_missing``/``not_missing``.
            Numbers match numerically, so 3 also matches "3" and 3.0
    """

    column: str
    operator: str = "eq"
    value: Any = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v):
        """Validate operator is one of the supported predicates."""
        if v not in VALID_OPERATORS:
            raise ValueError(
                f"Invalid operator: '{v}'. Must be one of: {', '.join(VALID_OPERATORS)}"
            )
        return v

    @model_validator(mode="after")
    def validate_value(self):
        """Check the value matches what the operator expects."""
        if self.operator in ("in", "not_in") and not isinstance(
            self.value, (list, tuple, set)
        ):
            raise ValueError(f"Operator '{self.operator}' requires a list value")
        if self.operator in ORDERED_OPERATORS:
            try:
                float(self.value)
            except (TypeError, ValueError):
                raise ValueError(
                    f"Operator '{self.operator}' requires a numeric value, got {self.value!r}"
                )
        if self.operator not in UNARY_OPERATORS and self.value is None:
            raise ValueError(f"Operator '{self.operator}' requires a value")
        return self

    def describe(self) -> str:
        if self.operator in UNARY_OPERATORS:
            return f"{self.column} {self.operator}"
        return f"{self.column} {self.operator} {self.value!r}"


class LabelRule(BaseModel):
    """
    One (pattern, label) rule for group label derivation.

    Attributes:
        pattern: Text matched against the annotation column
        label: Group label assigned when the pattern matches
        match: How the pattern is applied (contains | prefix | regex)
        case_sensitive: Whether matching respects case
    """

    pattern: str
    label: str
    match: str = "contains"
    case_sensitive: bool = True

    @field_validator("match")
    @classmethod
    def validate_match(cls, v):
        """Validate match mode."""
        if v not in VALID_MATCH_MODES:
            raise ValueError(
                f"Invalid match mode: '{v}'. Must be one of: {', '.join(VALID_MATCH_MODES)}"
            )
        return v

    @model_validator(mode="after")
    def validate_regex(self):
        """Compile regex patterns early so a typo fails at load time."""
        if self.match == "regex":
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern '{self.pattern}': {e}")
        return self

    def matches(self, text: str) -> bool:
        """Return True if ``text`` matches this rule."""
        if self.match == "regex":
            flags = 0 if self.case_sensitive else re.IGNORECASE
            return re.search(self.pattern, text, flags) is not None

        pattern = self.pattern if self.case_sensitive else self.pattern.lower()
        candidate = text if self.case_sensitive else text.lower()
        if self.match == "prefix":
            return candidate.startswith(pattern)
        return pattern in candidate


class CurationConfig(BaseModel):
    """
    Configuration of the metadata curation stage.

    Attributes:
        id_column: Column holding the sample identifier
        dedup_exclude_columns: Columns ignored when comparing duplicate rows
            (benign variation such as file references)
        retain_columns: Columns kept after deduplication, in output order;
            None keeps every column
        inclusion_rules: Ordered, conjunctive row filters
        annotation_column: Categorical column the label rules read
        label_rules: Ordered (pattern, label) rules, first match wins
        default_label: Label for rows matching no rule or lacking annotation
        label_column: Name of the derived label column
    """

    id_column: str = Field("sample_id", description="Sample identifier column")
    dedup_exclude_columns: List[str] = Field(
        default_factory=lambda: ["file_path"],
        description="Columns excluded from duplicate comparison",
    )
    retain_columns: Optional[List[str]] = Field(
        None, description="Columns to keep after deduplication (None keeps all)"
    )
    inclusion_rules: List[InclusionRule] = Field(default_factory=list)
    annotation_column: Optional[str] = Field(
        None, description="Column matched by label rules (None skips labelling)"
    )
    label_rules: List[LabelRule] = Field(default_factory=list)
    default_label: str = "other"
    label_column: str = "group"

    @field_validator("retain_columns")
    @classmethod
    def validate_retain_columns(cls, v):
        """Reject duplicate entries in the retained column list."""
        if v is not None and len(set(v)) != len(v):
            duplicated = sorted({c for c in v if v.count(c) > 1})
            raise ValueError(f"Duplicate entries in retain_columns: {duplicated}")
        return v

    @classmethod
    def load(cls, path: Path) -> "CurationConfig":
        """
        Load curation configuration from a JSON file.

        Args:
            path: JSON file written by ``save`` or by hand

        Returns:
            CurationConfig: Validated configuration

        Raises:
            FileNotFoundError: If the file does not exist
            pydantic.ValidationError: If the content is invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Curation config not found: {path}")

        with open(path, "r") as f:
            data = json.load(f)

        config = cls.model_validate(data)
        logger.debug(f"Loaded curation config from {path}")
        return config

    def save(self, path: Path) -> None:
        """
        Save configuration as JSON.

        Args:
            path: Target file
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
        logger.debug(f"Saved curation config to {path}")
