"""Main CLI entry point for zip-strip."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional, Tuple

import click

from .archive import ZipArchive
from .config import NormalizerConfig
from .errors import ZipStripError
from .extra_fields import parse_extra_fields
from .handlers.nested import NestedArchiveNormalizer
from .normalizer import NormalizationResult, normalize_archive
from .planner import Planner
from .report import NormalizationReport


@click.group()
def cli():
    """zip-strip: Canonicalize ZIP archives for reproducible builds."""
    pass


def resolve_config(
    config_path: Optional[Path], timestamp: Optional[int], nested: Optional[bool]
) -> NormalizerConfig:
    """
    Builds the effective configuration.

    Precedence: command-line options, then the config file, then
    SOURCE_DATE_EPOCH, then built-in defaults.
    """
    env_cfg = NormalizerConfig.from_env()
    cfg = NormalizerConfig.from_yaml(config_path) if config_path else NormalizerConfig()

    overrides = {}
    if cfg.canonical_time is None and env_cfg.canonical_time is not None:
        overrides["canonical_time"] = env_cfg.canonical_time
    if timestamp is not None:
        overrides["canonical_time"] = timestamp
    if nested is not None:
        overrides["nested"] = nested

    if not overrides:
        return cfg
    return NormalizerConfig.model_validate({**cfg.model_dump(), **overrides})


def process_archive(path: Path, cfg: NormalizerConfig) -> NormalizationResult:
    """Normalizes a single archive, descending into nested archives if enabled."""
    member_normalizer = NestedArchiveNormalizer(cfg) if cfg.nested else None
    return normalize_archive(path, cfg, member_normalizer=member_normalizer)


@cli.command()
@click.argument(
    "paths", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path)
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to a YAML config file.",
)
@click.option(
    "-t",
    "--timestamp",
    type=click.IntRange(0, 0xFFFFFFFF),
    help="Canonical time as Unix epoch seconds. Defaults to SOURCE_DATE_EPOCH.",
)
@click.option(
    "--nested/--no-nested",
    default=None,
    help="Also normalize ZIP archives stored inside the archives.",
)
@click.option(
    "-j", "--concurrency", type=int, default=1, help="Number of archives processed in parallel."
)
@click.option("--report", type=click.Path(path_type=Path), help="Write a JSON report here.")
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
@click.pass_context
def normalize(
    ctx: click.Context,
    paths: Tuple[Path, ...],
    config_path: Optional[Path],
    timestamp: Optional[int],
    nested: Optional[bool],
    concurrency: int,
    report: Optional[Path],
    verbose: bool,
):
    """Rewrites ZIP archives in place into their canonical form."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = resolve_config(config_path, timestamp, nested)
    except (ZipStripError, ValueError) as e:
        raise click.UsageError(str(e))

    targets = Planner(cfg).plan(paths)
    run_report = NormalizationReport(report or Path("zip-strip-report.json"))

    click.echo(f"Found {len(targets)} archives. Parallelism: {concurrency}")

    # Archives are independent; each one is still processed on a single thread.
    with ThreadPoolExecutor(max_workers=max(concurrency, 1)) as executor:
        futures = {
            executor.submit(process_archive, target.path, cfg): target
            for target in targets
        }
        for future in as_completed(futures):
            target = futures[future]
            try:
                result = future.result()
            except Exception as e:
                click.echo(f"Normalization failed for {target.path}: {e}", err=True)
                run_report.add_failure(target.path, e)
            else:
                run_report.add_result(result)
                if verbose:
                    click.echo(f"Normalized {target.path} ({len(result.members)} members)")

    if report:
        run_report.save()
        click.echo(f"Report saved to: {report}")

    if run_report.failures:
        click.echo(f"\n{run_report.failures} of {len(targets)} archives failed.", err=True)
        ctx.exit(1)
    click.echo("\nNormalization complete!")


@cli.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def inspect(archive: Path):
    """Lists members with their central and local extra-field records."""
    with ZipArchive(archive) as zf:
        for name in zf.member_names():
            member = zf.member(name)
            click.echo(
                f"{name}  mode={member.unix_mode:o}  "
                f"date_time={'-'.join(str(part) for part in member.date_time)}"
            )
            for label, raw in (("central", member.central_extra), ("local", member.local_extra)):
                records, trailing = parse_extra_fields(raw)
                for record in records:
                    click.echo(
                        f"  {label:<7} 0x{record.header_id:04x}  {len(record.payload)} bytes"
                    )
                if trailing:
                    click.echo(f"  {label:<7} padding  {len(trailing)} bytes")


if __name__ == "__main__":
    cli()
