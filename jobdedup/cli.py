"""Command-line interface for jobdedup."""
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import click
import yaml
from rich.console import Console
from rich.table import Table

from .config import load_config
from .domain.deduplication import DeduplicationEngine
from .domain.urls import extract_pattern, normalize_url
from .error_handling import DeduplicationError
from .models import JobRecord

console = Console()
logger = logging.getLogger(__name__)


def load_records(path: Path) -> List[JobRecord]:
    """Load job records from a JSON or YAML file.

    The file holds either a list of records or a mapping with a ``jobs``
    list. Records without an id are skipped with a warning.

    Args:
        path: Path to the records file

    Returns:
        Parsed records, in file order

    Raises:
        click.ClickException: If the file cannot be parsed
    """
    text = path.read_text()
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise click.ClickException(f"Failed to parse {path}: {e}")

    if isinstance(data, dict):
        data = data.get("jobs", [])
    if not isinstance(data, list):
        raise click.ClickException(f"{path} must contain a list of job records")

    records = []
    for position, item in enumerate(data):
        if not isinstance(item, dict):
            logger.warning(f"Ignoring entry {position}: not a mapping")
            continue
        try:
            records.append(JobRecord.from_dict(item))
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring entry {position}: {e}")
    return records


def create_engine(ctx: click.Context, workers: Optional[int] = None) -> DeduplicationEngine:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))
    if workers is not None:
        config = replace(config, engine=replace(config.engine, workers=workers))
    return DeduplicationEngine(config)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to dedup.yml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool):
    """jobdedup - duplicate detection for scraped job postings."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING,
                        format="[%(levelname)s] %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the report as JSON")
@click.option("--workers", type=int, default=None, help="Worker threads (overrides config)")
@click.pass_context
def dedupe(ctx: click.Context, file: Path, output: Optional[Path], workers: Optional[int]):
    """Group the job records in FILE into duplicate clusters."""
    records = load_records(file)
    engine = create_engine(ctx, workers)
    try:
        report = engine.deduplicate(records)
    except DeduplicationError as e:
        raise click.ClickException(str(e))
    finally:
        engine.close()

    by_id = {record.id: record for record in records}
    table = Table(title="Duplicate Groups")
    table.add_column("Representative", style="cyan")
    table.add_column("Title", style="green")
    table.add_column("Company", style="blue")
    table.add_column("Members", style="magenta")
    for group in report.groups:
        if group.size < 2:
            continue
        rep = by_id.get(group.representative_id)
        table.add_row(
            group.representative_id,
            rep.title if rep else "",
            rep.company if rep else "",
            ", ".join(sorted(group.member_ids)),
        )
    if report.duplicate_groups:
        console.print(table)

    console.print(f"\n[bold green]Deduplication Summary:[/bold green]")
    console.print(f"  Total records: {report.total_records}")
    console.print(f"  Unique records: {report.unique_record_count}")
    console.print(f"  Duplicate groups: {report.duplicate_groups}")
    if report.skipped:
        console.print(f"  [yellow]Skipped records: {len(report.skipped)}[/yellow]")
    if report.partial:
        console.print("  [red]Run was cancelled; results are partial[/red]")

    if output is not None:
        output.write_text(json.dumps(report.to_dict(), indent=2))
        console.print(f"[blue]Report written to {output}[/blue]")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("id_a")
@click.argument("id_b")
@click.pass_context
def compare(ctx: click.Context, file: Path, id_a: str, id_b: str):
    """Compare the records ID_A and ID_B from FILE."""
    records = {record.id: record for record in load_records(file)}
    for record_id in (id_a, id_b):
        if record_id not in records:
            raise click.ClickException(f"No record with id '{record_id}' in {file}")

    engine = create_engine(ctx)
    try:
        result = engine.classify(records[id_a], records[id_b])
    finally:
        engine.close()

    table = Table(title=f"{id_a} vs {id_b}")
    table.add_column("Feature", style="cyan")
    table.add_column("Value", style="green", justify="right")
    for name, value in result.features.items():
        table.add_row(name, f"{value:.3f}")
    console.print(table)

    verdict = "[red]DUPLICATE[/red]" if result.is_duplicate else "[green]not a duplicate[/green]"
    console.print(f"Score: {result.score:.3f}  Confidence: {result.confidence:.3f}  "
                  f"Strategy: {result.strategy}  Verdict: {verdict}")
    for line in result.explanation:
        console.print(f"  - {line}")


@cli.command("normalize-url")
@click.argument("url")
def normalize_url_command(url: str):
    """Print the canonical form and path pattern of URL."""
    console.print(normalize_url(url), markup=False, soft_wrap=True)
    console.print(extract_pattern(url), markup=False, soft_wrap=True)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
