"""
SRA Provider for run-level sample metadata retrieval.

This provider queries NCBI's Sequence Read Archive through E-utilities:
``esearch`` resolves a project accession (SRP/PRJNA/...) to SRA UIDs and
``esummary`` returns one DocSum per experiment. Each DocSum carries two
escaped XML blocks, ``ExpXml`` (experiment description) and ``Runs`` (run
description), which are parsed with xmltodict and flattened into one flat
row per run.

Every request has a hard timeout and is retried with exponential backoff
on timeouts, connection errors, HTTP 429 and HTTP 5xx.
"""

import html
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import xmltodict
from pydantic import BaseModel, Field

from dgeprep.config.settings import get_settings
from dgeprep.core.exceptions import DGEPrepCoreError, MissingFieldError
from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)

ESEARCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
ESUMMARY_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esummary.fcgi"

# Canonical column name -> flattened markup column it is copied from
CANONICAL_FIELDS = {
    "run_accession": "run_acc",
    "experiment_accession": "experiment_acc",
    "sample_accession": "sample_acc",
    "study_accession": "study_acc",
    "organism": "organism_scientificname",
    "title": "summary_title",
    "platform": "summary_platform",
    "instrument_model": "summary_platform_instrument_model",
    "library_name": "library_descriptor_library_name",
    "library_strategy": "library_descriptor_library_strategy",
    "library_source": "library_descriptor_library_source",
    "library_selection": "library_descriptor_library_selection",
}


class SRAProviderConfig(BaseModel):
    """Configuration for SRA provider."""

    email: str = Field(default_factory=lambda: get_settings().NCBI_EMAIL)
    api_key: Optional[str] = Field(
        default_factory=lambda: get_settings().NCBI_API_KEY or None
    )
    tool: str = Field(default_factory=lambda: get_settings().NCBI_TOOL)
    batch_size: int = Field(
        default=500,
        ge=1,
        le=10000,
        description="UIDs per esearch page and per esummary request",
    )
    request_timeout: float = Field(
        default_factory=lambda: get_settings().HTTP_TIMEOUT,
        gt=0,
        description="Hard timeout in seconds for every HTTP request",
    )
    max_retries: int = Field(
        default_factory=lambda: get_settings().MAX_RETRIES, ge=0, le=10
    )
    backoff_seconds: float = Field(
        default_factory=lambda: get_settings().BACKOFF_SECONDS,
        ge=0,
        description="Initial retry delay, doubled after each attempt",
    )
    required_fields: List[str] = Field(
        default_factory=lambda: [
            "run_accession",
            "experiment_accession",
            "sample_accession",
        ],
        description="Flattened fields every run row must carry",
    )
    id_field: str = Field(
        default="run_accession", description="Column used as the sample key"
    )


class SRAProviderError(DGEPrepCoreError):
    """Base exception for SRAProvider errors."""

    pass


class SRANotFoundError(SRAProviderError):
    """Project accession resolved to no SRA records."""

    pass


class SRAConnectionError(SRAProviderError):
    """Failed to reach NCBI after exhausting retries."""

    pass


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _join_key(prefix: str, name: str) -> str:
    return "_".join(part for part in (prefix, name) if part).lower()


def flatten_markup(node: Any, prefix: str = "") -> Dict[str, Any]:
    """
    Flatten an xmltodict structure into a single-level dict.

    Attributes become ``<element>_<attribute>``, element text becomes
    ``<element>``, nesting is joined with ``_`` and names are lower-cased.
    Repeated elements are joined with ``"; "``.

    Examples:
        >>> flatten_markup({"Sample": {"@acc": "SRS1", "@name": "S1"}})
        {'sample_acc': 'SRS1', 'sample_name': 'S1'}
    """
    flat: Dict[str, Any] = {}

    if isinstance(node, dict):
        for key, value in node.items():
            if key.startswith("@"):
                name = key[1:]
            elif key == "#text":
                name = ""
            else:
                name = key
            flat.update(flatten_markup(value, _join_key(prefix, name)))

    elif isinstance(node, list):
        collected: Dict[str, List[str]] = defaultdict(list)
        for item in node:
            for key, value in flatten_markup(item, prefix).items():
                if not _is_missing(value):
                    collected[key].append(str(value))
                else:
                    collected.setdefault(key, [])
        for key, values in collected.items():
            flat[key] = "; ".join(values) if values else None

    elif prefix:
        flat[prefix] = node

    return flat


class SRAProvider:
    """
    SRA provider for run-level metadata via NCBI E-utilities.

    Supports SRA accessions: SRP (study), PRJNA/PRJEB (BioProject),
    SRX (experiment), SRS (sample), SRR (run); anything ``esearch`` accepts
    as a term on ``db=sra``.
    """

    def __init__(
        self,
        config: Optional[SRAProviderConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize SRAProvider.

        Args:
            config: Optional provider configuration
            session: Optional requests session (shared connection pool)
        """
        self.config = config or SRAProviderConfig()
        self.session = session or requests.Session()

        if not self.config.email:
            logger.debug("NCBI_EMAIL not set; NCBI asks clients to identify themselves")

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _base_params(self) -> Dict[str, str]:
        params = {"tool": self.config.tool}
        if self.config.email:
            params["email"] = self.config.email
        if self.config.api_key:
            params["api_key"] = self.config.api_key
        return params

    def _execute_request_with_retry(
        self, url: str, params: Dict[str, Any]
    ) -> requests.Response:
        """
        Execute a GET request with timeout and exponential backoff.

        Raises:
            SRAConnectionError: Retries exhausted on a retryable failure
            SRAProviderError: Non-retryable HTTP error (4xx other than 429)
        """
        attempt = 0
        sleep_time = self.config.backoff_seconds
        max_retries = self.config.max_retries

        while True:
            try:
                response = self.session.get(
                    url, params=params, timeout=self.config.request_timeout
                )
            except (
                requests.exceptions.Timeout,
                requests.exceptions.ConnectionError,
            ) as e:
                if attempt < max_retries:
                    logger.warning(
                        f"Network error: {e}. Retrying after {sleep_time}s "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    time.sleep(sleep_time)
                    sleep_time *= 2
                    attempt += 1
                    continue
                raise SRAConnectionError(
                    f"Network error after {max_retries} retries: {e}",
                    details={"url": url, "retries": max_retries},
                ) from e

            status = response.status_code
            if status == 429 or status >= 500:
                if attempt < max_retries:
                    delay = sleep_time
                    retry_after = response.headers.get("Retry-After")
                    if status == 429 and retry_after:
                        try:
                            delay = float(retry_after)
                        except ValueError:
                            pass
                    logger.warning(
                        f"HTTP {status} from NCBI. Retrying after {delay}s "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    time.sleep(delay)
                    sleep_time *= 2
                    attempt += 1
                    continue
                raise SRAConnectionError(
                    f"HTTP {status} from NCBI after {max_retries} retries",
                    details={"url": url, "status_code": status, "retries": max_retries},
                )

            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                raise SRAProviderError(
                    f"NCBI request failed with HTTP {status}: {e}",
                    details={"url": url, "status_code": status},
                ) from e

            return response

    # ------------------------------------------------------------------
    # E-utilities
    # ------------------------------------------------------------------

    def search_runs(self, project_id: str) -> List[str]:
        """
        Resolve a project accession to SRA UIDs with paginated esearch.

        Args:
            project_id: Project accession (e.g. "SRP123456", "PRJNA400000")

        Returns:
            List[str]: SRA UIDs in esearch order
        """
        all_ids: List[str] = []
        retstart = 0
        total_count: Optional[int] = None

        while total_count is None or retstart < total_count:
            params = {
                **self._base_params(),
                "db": "sra",
                "term": project_id,
                "retmode": "json",
                "retmax": str(self.config.batch_size),
                "retstart": str(retstart),
            }
            response = self._execute_request_with_retry(ESEARCH_URL, params)

            try:
                esearch_result = response.json().get("esearchresult", {})
            except ValueError as e:
                raise SRAProviderError(f"Invalid esearch response: {e}") from e

            if "ERROR" in esearch_result:
                raise SRAProviderError(
                    f"NCBI esearch error: {esearch_result['ERROR']}",
                    details={"term": project_id},
                )

            total_count = int(esearch_result.get("count", 0))
            batch_ids = esearch_result.get("idlist", [])
            all_ids.extend(batch_ids)

            logger.debug(
                f"esearch page retstart={retstart}: {len(batch_ids)} IDs "
                f"({total_count} total)"
            )

            if not batch_ids:
                break
            retstart += len(batch_ids)

        if not all_ids:
            logger.warning(f"No SRA records found for {project_id}")
        else:
            logger.info(f"Found {len(all_ids)} SRA records for {project_id}")

        return all_ids

    def fetch_summaries(self, uids: List[str]) -> List[Dict[str, Any]]:
        """
        Fetch esummary DocSum records for SRA UIDs.

        Args:
            uids: SRA UIDs from ``search_runs``

        Returns:
            List of DocSum dicts as parsed by xmltodict
        """
        doc_summaries: List[Dict[str, Any]] = []

        for start in range(0, len(uids), self.config.batch_size):
            batch = uids[start : start + self.config.batch_size]
            params = {
                **self._base_params(),
                "db": "sra",
                "id": ",".join(batch),
                "retmode": "xml",
            }
            response = self._execute_request_with_retry(ESUMMARY_URL, params)

            try:
                result = xmltodict.parse(response.text)
            except Exception as e:
                raise SRAProviderError(f"Invalid esummary XML: {e}") from e

            esummary_result = (result or {}).get("eSummaryResult") or {}
            if "ERROR" in esummary_result:
                raise SRAProviderError(
                    f"NCBI esummary error: {esummary_result['ERROR']}",
                    details={"ids": batch},
                )

            docs = esummary_result.get("DocSum", [])
            if isinstance(docs, dict):
                docs = [docs]
            doc_summaries.extend(doc for doc in docs if isinstance(doc, dict))

        logger.debug(f"Fetched {len(doc_summaries)} DocSum records")
        return doc_summaries

    def _extract_item_content(self, doc: Dict, item_name: str) -> Optional[str]:
        """
        Extract and unescape XML content from a DocSum <Item> element.

        NCBI SRA esummary returns structure:
        <DocSum>
            <Item Name="ExpXml" Type="String">&lt;Summary&gt;...&lt;/Summary&gt;</Item>
            <Item Name="Runs" Type="String">&lt;Run acc="..."/&gt;</Item>
        </DocSum>

        Args:
            doc: DocSum dict from xmltodict
            item_name: Name attribute to look for ("ExpXml", "Runs")

        Returns:
            Unescaped XML string or None if not found or empty
        """
        items = doc.get("Item", [])
        if isinstance(items, dict):
            items = [items]

        for item in items:
            if not isinstance(item, dict) or item.get("@Name") != item_name:
                continue
            content = item.get("#text")
            if content is None or not str(content).strip():
                return None
            return html.unescape(str(content))

        return None

    @staticmethod
    def _parse_wrapped(fragment: str) -> Dict[str, Any]:
        # ExpXml and Runs hold several top-level elements
        parsed = xmltodict.parse(f"<Root>{fragment}</Root>")
        return parsed.get("Root") or {}

    def flatten_summary(self, doc: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Flatten one DocSum into one row per run.

        Experiment fields are shared by every run of the experiment; run
        attributes are prefixed with ``run_``. Canonical aliases
        (``run_accession``, ``sample_accession``, ...) are added.

        Args:
            doc: DocSum dict from ``fetch_summaries``

        Returns:
            List of flat row dicts

        Raises:
            MissingFieldError: If ExpXml/Runs is absent or a required field
                is missing from a run row
        """
        uid = doc.get("Id")
        exp_xml = self._extract_item_content(doc, "ExpXml")
        runs_xml = self._extract_item_content(doc, "Runs")

        missing_blocks = [
            name
            for name, block in (("ExpXml", exp_xml), ("Runs", runs_xml))
            if block is None
        ]
        if missing_blocks:
            raise MissingFieldError(
                f"SRA record {uid} lacks {', '.join(missing_blocks)}; "
                "sample identity cannot be resolved from metadata",
                details={"record": uid, "missing_fields": missing_blocks},
            )

        experiment = self._parse_wrapped(exp_xml)
        runs = self._parse_wrapped(runs_xml).get("Run", [])
        if isinstance(runs, dict):
            runs = [runs]
        if not runs:
            raise MissingFieldError(
                f"SRA record {uid} has an empty Runs block",
                details={"record": uid, "missing_fields": ["Run"]},
            )

        experiment_fields = flatten_markup(experiment)
        library_layout = self._library_layout(experiment)

        rows = []
        for run in runs:
            row: Dict[str, Any] = {"uid": uid}
            row.update(experiment_fields)
            row.update(flatten_markup(run, "run"))
            for canonical, source in CANONICAL_FIELDS.items():
                row[canonical] = row.get(source)
            row["library_layout"] = library_layout

            missing = [f for f in self.config.required_fields if _is_missing(row.get(f))]
            if missing:
                raise MissingFieldError(
                    f"SRA record {uid} is missing required field(s): {', '.join(missing)}",
                    details={
                        "record": uid,
                        "missing_fields": missing,
                        "available_fields": sorted(
                            k for k, v in row.items() if not _is_missing(v)
                        ),
                    },
                )
            rows.append(row)

        return rows

    @staticmethod
    def _library_layout(experiment: Dict[str, Any]) -> Optional[str]:
        descriptor = experiment.get("Library_descriptor")
        if not isinstance(descriptor, dict):
            return None
        layout = descriptor.get("LIBRARY_LAYOUT")
        # <LIBRARY_LAYOUT><PAIRED/></LIBRARY_LAYOUT> parses to {"PAIRED": None}
        if isinstance(layout, dict):
            return next(iter(layout.keys()), None)
        return layout

    def get_project_metadata(self, project_id: str) -> pd.DataFrame:
        """
        Retrieve run-level metadata for every run of a project.

        Args:
            project_id: Project accession

        Returns:
            pd.DataFrame: One row per run, canonical columns first

        Raises:
            SRANotFoundError: If the project has no SRA records
            MissingFieldError: If any summary lacks a required field
        """
        uids = self.search_runs(project_id)
        if not uids:
            raise SRANotFoundError(
                f"No SRA records found for {project_id}",
                details={
                    "project_id": project_id,
                    "suggestions": [
                        "Check the accession (SRP..., PRJNA..., PRJEB...)",
                        "Recently released projects can take a day to be indexed",
                    ],
                },
            )

        rows: List[Dict[str, Any]] = []
        for doc in self.fetch_summaries(uids):
            rows.extend(self.flatten_summary(doc))

        df = pd.DataFrame(rows)
        leading = [c for c in ["uid", *CANONICAL_FIELDS, "library_layout"] if c in df]
        df = df[leading + [c for c in df.columns if c not in leading]]

        logger.info(
            f"Parsed {len(df)} runs from {len(uids)} SRA records for {project_id}"
        )
        return df
