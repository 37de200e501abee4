"""Command-line interface for sparklet."""

import click
import json
import logging
import sys
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config.manager import ConfigManager
from .config.schema import SessionConfig
from .core.session import Session
from .distributed.dataset import Dataset
from .ml.persistence import load, read_metadata, save
from .ml.pipeline import Pipeline


console = Console()


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        logging.getLogger().addHandler(file_handler)


def _open_session(ctx) -> Session:
    config = (ctx.obj or {}).get('config')
    if config:
        return Session.from_config_file(config)
    return Session()


def _read_input(session: Session, path: str) -> Dataset:
    if Path(path).suffix.lower() == '.csv':
        return session.read_csv(path)
    return session.read_parquet(path)


def _load_stage_specs(path: str) -> List[Dict[str, Any]]:
    with open(path, 'r') as f:
        spec = yaml.safe_load(f)
    if isinstance(spec, dict):
        spec = spec.get('stages')
    if not isinstance(spec, list):
        raise click.BadParameter(f"{path} must contain a list of stages or a 'stages' key")
    return spec


@click.group(invoke_without_command=True)
@click.option('--config', '-c', type=click.Path(exists=True), help='Session configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--log-file', type=click.Path(), help='Log file path')
@click.option('--version', is_flag=True, help='Show version and exit')
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool, log_file: Optional[str], version: bool):
    """sparklet - ML pipelines on a lazily evaluated, partitioned dataset engine."""
    if version:
        console.print(f"sparklet version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        return

    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['verbose'] = verbose
    ctx.obj['log_file'] = log_file

    setup_logging(verbose, log_file)


@cli.command()
@click.argument('config', type=click.Path(exists=True))
def validate(config: str):
    """Validate a session configuration file."""
    try:
        config_manager = ConfigManager()
        validation_result = config_manager.validate_schema(config_manager.read_config(config))

        if validation_result.valid:
            console.print(f"[green]✓[/green] Configuration is valid: {config}")

            if validation_result.warnings:
                console.print("\n[yellow]Warnings:[/yellow]")
                for warning in validation_result.warnings:
                    console.print(f"  [yellow]•[/yellow] {warning}")

            _display_config_summary(validation_result.config)
        else:
            console.print(f"[red]✗[/red] Configuration is invalid: {config}")
            console.print("\n[red]Errors:[/red]")
            for error in validation_result.errors:
                console.print(f"  [red]•[/red] {error}")
            sys.exit(1)

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command('init-config')
@click.argument('output', type=click.Path())
@click.option('--format', 'fmt', type=click.Choice(['yaml', 'json']), default='yaml', help='Output format')
def init_config(output: str, fmt: str):
    """Write the default session configuration."""
    try:
        config_manager = ConfigManager()
        template = SessionConfig(**config_manager.get_default_config())
        output_path = Path(output)
        config_manager.save_config(template, output_path, format=fmt)

        console.print(f"[green]✓[/green] Configuration written: {output_path}")
        console.print(Panel(
            f"""[bold]Next Steps:[/bold]

1. Edit the configuration file: {output_path}
2. Describe a pipeline as a YAML list of stages (type + params)
3. Fit it: sparklet --config {output_path} fit --pipeline pipeline.yaml --input data.csv --output model

[dim]For more help, run: sparklet --help[/dim]""",
            title="Getting Started",
            border_style="green"
        ))

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.option('--pipeline', 'pipeline_path', required=True, type=click.Path(exists=True),
              help='YAML list of stages: [{type: ..., params: {...}}, ...]')
@click.option('--input', 'input_path', required=True, type=click.Path(exists=True),
              help='Training data (CSV file or parquet file/directory)')
@click.option('--output', 'output_path', required=True, type=click.Path(), help='Directory for the fitted model')
@click.option('--overwrite', is_flag=True, help='Replace an existing model directory')
@click.pass_context
def fit(ctx, pipeline_path: str, input_path: str, output_path: str, overwrite: bool):
    """Fit a pipeline described in YAML and save the fitted model."""
    try:
        pipeline = Pipeline.from_config(_load_stage_specs(pipeline_path))
        console.print(f"[green]✓[/green] Pipeline built with {len(pipeline.stages)} stages")

        with _open_session(ctx) as session:
            dataset = _read_input(session, input_path)
            with console.status("[bold green]Fitting pipeline..."):
                model = pipeline.fit(dataset)
            save(model, output_path, overwrite=overwrite)

        console.print(f"[green]✓[/green] Model saved: {output_path}")
        _display_stages(read_metadata(output_path))

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.option('--model', 'model_path', required=True, type=click.Path(exists=True), help='Saved model directory')
@click.option('--input', 'input_path', required=True, type=click.Path(exists=True),
              help='Data to transform (CSV file or parquet file/directory)')
@click.option('--output', 'output_path', required=True, type=click.Path(),
              help='Output CSV file, or a directory of parquet files')
@click.pass_context
def transform(ctx, model_path: str, input_path: str, output_path: str):
    """Apply a saved model to a dataset."""
    try:
        model = load(model_path)

        with _open_session(ctx) as session:
            result = model.transform(_read_input(session, input_path))
            if Path(output_path).suffix.lower() == '.csv':
                frame = result.collect()
                for column in result.schema.vector_columns():
                    frame[column] = [json.dumps([float(x) for x in v]) for v in frame[column]]
                frame.to_csv(output_path, index=False)
                rows = len(frame)
            else:
                rows = result.count()
                result.write_parquet(output_path)

        console.print(f"[green]✓[/green] Wrote {rows} rows to {output_path}")

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.argument('model_path', type=click.Path(exists=True))
def inspect(model_path: str):
    """Show the stages of a saved pipeline or stage."""
    try:
        _display_stages(read_metadata(model_path))
    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


def _display_stages(records: List[Dict[str, Any]]):
    """Display persisted stage records."""
    table = Table(title="Stages")
    table.add_column("#", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("UID")
    table.add_column("Params")

    for record in records:
        params = record.get("params") or {}
        rendered = ", ".join(f"{k}={v}" for k, v in params.items())
        if record.get("layout") == "pipeline":
            rendered = f"{record.get('num_stages', 0)} nested stages"
        table.add_row(str(record.get("position", 0)), record.get("class", "?"), record.get("uid", "?"), rendered)

    console.print(table)


def _display_config_summary(config):
    """Display configuration summary."""
    if not config:
        return

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")

    execution = config.execution
    table.add_row("Application", config.app_name)
    table.add_row("Backend", str(execution.backend))
    table.add_row("Max Workers", str(execution.max_workers or "auto"))
    table.add_row("Task Attempts", str(execution.max_task_retries))
    table.add_row("Cache Level", str(config.cache.storage_level))
    table.add_row("Checkpoints", config.checkpoint.directory or "temporary")
    table.add_row("Folds", str(config.tuning.num_folds))

    console.print(table)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
