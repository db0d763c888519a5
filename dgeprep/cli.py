"""
Command line interface for dgeprep.

One command per manual stage of the workflow. Every stage reads its inputs
from files and writes its outputs to files, so a human can inspect the
result of each step before running the next one:

    dgeprep fetch-metadata SRP123456 -o raw.tsv
    dgeprep curate raw.tsv -c curation.json -o samples.tsv
    dgeprep annotate genes.gtf.gz -o annotation/
    dgeprep aggregate quant/ -s samples.tsv -a annotation/ -o results/
"""

import logging
from pathlib import Path
from typing import Optional

import pandas as pd
import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from dgeprep.config.curation_config import CurationConfig
from dgeprep.config.settings import get_settings
from dgeprep.core.exceptions import DGEPrepCoreError
from dgeprep.services.analysis.quantification_service import QuantificationService
from dgeprep.services.annotation.annotation_service import AnnotationService
from dgeprep.services.data_management.bundle_export_service import (
    DEFAULT_PREFIX,
    BundleExportService,
)
from dgeprep.services.metadata.metadata_curation_service import (
    MetadataCurationService,
    align_to_index,
)
from dgeprep.services.metadata.metadata_loader_service import MetadataLoaderService
from dgeprep.services.quality.consistency_service import ConsistencyReport, ConsistencyService
from dgeprep.tools.providers.sra_provider import SRAProvider, SRAProviderConfig
from dgeprep.utils.logger import get_logger, setup_cli_logging
from dgeprep.version import __version__

logger = get_logger(__name__)

console = Console()

app = typer.Typer(
    name="dgeprep",
    help="Assemble differential gene expression inputs from SRA metadata, a GTF and transcript quantification",
    add_completion=False,
    rich_markup_mode="rich",
)

TX2GENE_FILE = "tx2gene.tsv"
TRANSCRIPT_METADATA_FILE = "transcript_metadata.tsv"


def _version_callback(value: bool):
    if value:
        console.print(f"dgeprep {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: Optional[bool] = typer.Option(
        None, "--version", callback=_version_callback, is_eager=True, help="Show version"
    ),
):
    """Stage-by-stage DGE input assembly."""
    level = logging.DEBUG if verbose else getattr(logging, get_settings().LOG_LEVEL, logging.INFO)
    setup_cli_logging(level)


def _fail(error: Exception) -> None:
    console.print(f"[red]❌ {type(error).__name__}: {escape(str(error))}[/red]")
    details = getattr(error, "details", None) or {}
    for key, value in details.items():
        if key == "suggestions":
            continue
        console.print(f"[dim]  {key}: {escape(str(value))}[/dim]")
    for suggestion in details.get("suggestions", []):
        console.print(f"[yellow]  → {escape(str(suggestion))}[/yellow]")
    raise typer.Exit(1)


def _write_tsv(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False, na_rep="NA")
    console.print(f"[green]✓[/green] Wrote {len(df)} rows to {path}")


def _report_table(report: ConsistencyReport) -> Table:
    table = Table(title="Consistency check", box=box.ROUNDED, header_style="bold cyan")
    table.add_column("Position", justify="right")
    table.add_column("Metadata")
    table.add_column("Bundle")
    for position, meta_id, bundle_id in report.mismatches[:50]:
        table.add_row(str(position), meta_id or "[dim]-[/dim]", bundle_id or "[dim]-[/dim]")
    return table


@app.command("fetch-metadata")
def fetch_metadata(
    project_id: str = typer.Argument(..., help="SRA project accession (SRP, PRJNA, PRJEB, ...)"),
    output: Path = typer.Option(..., "--output", "-o", help="Output TSV"),
    local: Optional[Path] = typer.Option(
        None, "--local", "-l", help="Local metadata TSV to join with the remote table"
    ),
    local_key: str = typer.Option("sample_id", "--local-key", help="Identifier column in the local TSV"),
    remote_key: str = typer.Option(
        "run_accession", "--remote-key", help="Remote column joined against the local identifier"
    ),
    how: str = typer.Option("inner", "--how", help="Join type: inner, left, right, outer"),
):
    """Download run-level metadata for a project from the SRA."""
    try:
        provider = SRAProvider(SRAProviderConfig())
        loader = MetadataLoaderService(provider=provider)
        df = loader.load_remote(project_id)
        if local is not None:
            local_df = loader.load_local(local, id_column=local_key)
            df = loader.merge_sources(df, local_df, remote_key=remote_key, local_key=local_key, how=how)
    except (DGEPrepCoreError, FileNotFoundError) as e:
        _fail(e)
    _write_tsv(df, output)


@app.command()
def curate(
    raw: Path = typer.Argument(..., help="Raw metadata TSV"),
    config: Path = typer.Option(..., "--config", "-c", help="Curation config (JSON)"),
    output: Path = typer.Option(..., "--output", "-o", help="Curated sample TSV"),
    id_column: Optional[str] = typer.Option(
        None, "--id-column", help="Identifier column (overrides the config)"
    ),
):
    """Deduplicate, filter and label sample metadata."""
    try:
        curation_config = CurationConfig.load(config)
        if id_column:
            curation_config = curation_config.model_copy(update={"id_column": id_column})
        loader = MetadataLoaderService()
        df = loader.load_local(raw, id_column=curation_config.id_column)
        curated = MetadataCurationService(curation_config).curate(df)
    except (DGEPrepCoreError, FileNotFoundError) as e:
        _fail(e)

    if curation_config.annotation_column:
        counts = curated[curation_config.label_column].value_counts()
        table = Table(title="Groups", box=box.SIMPLE, header_style="bold cyan")
        table.add_column("Label")
        table.add_column("Samples", justify="right")
        for label, n in counts.items():
            table.add_row(str(label), str(n))
        console.print(table)
    _write_tsv(curated, output)


@app.command()
def annotate(
    gtf: Path = typer.Argument(..., help="GTF annotation (plain or .gz)"),
    output_dir: Path = typer.Option(..., "--output", "-o", help="Output directory"),
    strip_version: bool = typer.Option(
        False, "--strip-version", help="Remove .N version suffixes from ids"
    ),
):
    """Build the transcript-to-gene map and transcript metadata from a GTF."""
    try:
        tx2gene, metadata = AnnotationService(strip_version=strip_version).load(gtf)
    except (DGEPrepCoreError, FileNotFoundError) as e:
        _fail(e)
    _write_tsv(tx2gene, output_dir / TX2GENE_FILE)
    _write_tsv(metadata, output_dir / TRANSCRIPT_METADATA_FILE)


@app.command()
def aggregate(
    quant_root: Path = typer.Argument(..., help="Root directory of per-sample quantification"),
    samples_path: Path = typer.Option(..., "--samples", "-s", help="Curated sample TSV"),
    annotation_dir: Path = typer.Option(
        ..., "--annotation", "-a", help="Directory written by 'dgeprep annotate'"
    ),
    output_dir: Path = typer.Option(..., "--output", "-o", help="Output directory"),
    id_column: str = typer.Option("sample_id", "--id-column", help="Identifier column"),
    tool: str = typer.Option("salmon", "--tool", "-t", help="salmon or kallisto"),
    unmapped_policy: str = typer.Option(
        "error", "--unmapped-policy", help="error or drop transcripts missing from tx2gene"
    ),
    counts_from_abundance: str = typer.Option(
        "no", "--counts-from-abundance", help="no, scaledTPM or lengthScaledTPM"
    ),
    ignore_tx_version: bool = typer.Option(
        False, "--ignore-tx-version", help="Strip .N suffixes before matching transcripts"
    ),
    align: bool = typer.Option(
        False, "--align", help="Reorder samples to the bundle column order before checking"
    ),
    prefix: str = typer.Option(DEFAULT_PREFIX, "--prefix", help="Archive file name prefix"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing archive"),
):
    """Aggregate quantification to gene level, check consistency and export."""
    try:
        service = QuantificationService(
            tool=tool,
            unmapped_policy=unmapped_policy,
            counts_from_abundance=counts_from_abundance,
            ignore_tx_version=ignore_tx_version,
        )
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(2)

    try:
        samples = MetadataLoaderService().load_local(samples_path, id_column=id_column)
        tx2gene = pd.read_csv(annotation_dir / TX2GENE_FILE, sep="\t", dtype=str)
        tx_metadata = pd.read_csv(
            annotation_dir / TRANSCRIPT_METADATA_FILE,
            sep="\t",
            dtype=str,
            na_values=["", "NA"],
            keep_default_na=False,
        )
        bundle = service.aggregate(quant_root, samples[id_column].tolist(), tx2gene)
        if align:
            samples = align_to_index(samples, bundle.sample_ids, id_column=id_column)
    except (DGEPrepCoreError, FileNotFoundError) as e:
        _fail(e)

    console.print(
        f"[green]✓[/green] Bundle: {bundle.shape[0]} genes x {bundle.shape[1]} samples"
        + (f" ({bundle.n_dropped_transcripts} unmapped transcripts dropped)" if bundle.n_dropped_transcripts else "")
    )

    report = ConsistencyService().check(samples, bundle, id_column=id_column)
    if not report.passed:
        console.print(f"[red]❌ {report.summary()}[/red]")
        console.print(_report_table(report))
        console.print("[dim]Fix the sample table or re-run with --align; nothing was exported[/dim]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {report.summary()}")

    try:
        path = BundleExportService().export(
            bundle,
            samples,
            tx_metadata,
            output_dir,
            id_column=id_column,
            prefix=prefix,
            overwrite=overwrite,
        )
    except (DGEPrepCoreError, FileExistsError) as e:
        _fail(e)
    console.print(f"[green]✓[/green] Archive written to {path}")


@app.command("config-show")
def config_show():
    """Display current configuration with masked secrets."""
    settings = get_settings()

    def mask_secret(value: Optional[str], show_chars: int = 4) -> str:
        if not value:
            return "[dim]Not set[/dim]"
        if len(value) <= show_chars:
            return "[yellow]" + "*" * len(value) + "[/yellow]"
        return f"[yellow]{value[:show_chars]}{'*' * (len(value) - show_chars)}[/yellow]"

    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("NCBI_EMAIL", settings.NCBI_EMAIL or "[dim]Not set[/dim]")
    table.add_row("NCBI_API_KEY", mask_secret(settings.NCBI_API_KEY))
    table.add_row("NCBI_TOOL", settings.NCBI_TOOL)
    table.add_row("DGEPREP_HTTP_TIMEOUT", str(settings.HTTP_TIMEOUT))
    table.add_row("DGEPREP_MAX_RETRIES", str(settings.MAX_RETRIES))
    table.add_row("DGEPREP_BACKOFF_SECONDS", str(settings.BACKOFF_SECONDS))
    table.add_row("DGEPREP_LOG_LEVEL", settings.LOG_LEVEL)
    table.add_row("DGEPREP_WORKSPACE", str(settings.WORKSPACE_DIR))
    console.print(table)


if __name__ == "__main__":
    app()
