"""
Command-line interface for the Serving Benchmark Toolkit.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import pandas as pd

from . import __version__
from .config import ConfigManager, find_config_file, load_config_with_auto_discovery
from .core import EXIT_FAILURE, EXIT_INTERRUPTED, SweepOrchestrator, exit_code_for
from .logging import setup_logging
from .models import BatchResult, RequestOutcome, RunState, TestCase
from .storage import ResultStore, compare_engines


def echo_request(test_case: TestCase, index: int, total: int, outcome: RequestOutcome):
    """Print one line per request."""
    prefix = f"  Request {index}/{total}... "
    if outcome.success:
        click.echo(
            f"{prefix}✓ {outcome.elapsed:.3f}s, {outcome.tokens} tokens, "
            f"{outcome.tokens_per_second:.2f} t/s"
        )
    else:
        click.echo(f"{prefix}✗ Failed ({outcome.failure_reason.value}, {outcome.attempts} attempts)")


def echo_batch(result: BatchResult):
    """Print the summary block of a finished batch."""
    click.echo()
    click.echo(f"Results for {result.engine} ({result.prompt_type}, max_tokens={result.max_tokens}):")
    click.echo(f"  Successful requests: {result.successful_requests}/{result.total_requests}")
    if result.failed:
        click.secho("  All requests failed", fg='red')
    else:
        click.echo(f"  Average response time: {result.avg_response_time:.3f}s")
        click.echo(f"  Min/Max response time: {result.min_response_time:.3f}s / {result.max_response_time:.3f}s")
        click.echo(f"  Std dev response time: {result.std_dev_response_time:.3f}s")
        click.echo(f"  Average tokens generated: {result.avg_tokens}")
        click.echo(f"  Average tokens/second: {result.avg_tokens_per_second:.2f}")
    click.echo()


def echo_results_table(df: pd.DataFrame):
    if df.empty:
        click.echo("No results recorded.")
        return
    click.echo(df.to_string(index=False, na_rep='-'))


def _resolve_run_dir(run_dir: Optional[str], output_dir: str) -> Path:
    if run_dir:
        return Path(run_dir)
    latest = ResultStore.latest_run(output_dir)
    if latest is None:
        click.echo(f"Error: No benchmark runs found in {output_dir}", err=True)
        sys.exit(EXIT_FAILURE)
    return latest


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c',
              help='Path to configuration file')
@click.option('--log-level',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level (overrides config)')
@click.option('--log-format',
              type=click.Choice(['structured', 'simple']),
              help='Log format (overrides config)')
@click.pass_context
def cli(ctx, config: Optional[str], log_level: Optional[str], log_format: Optional[str]):
    """Serving Benchmark Toolkit - compare latency and throughput of two chat-completion backends."""
    ctx.ensure_object(dict)
    ctx.obj['config_file'] = config
    ctx.obj['overrides'] = {
        'log_level': log_level.upper() if log_level else None,
        'log_format': log_format
    }


@cli.command()
@click.option('--engine', '-e',
              type=click.Choice(['primary', 'secondary', 'both', 'llama', 'vllm'], case_sensitive=False),
              help='Engine(s) to benchmark')
@click.option('--tokens', '-t', 'token_counts',
              help='Comma-separated max_tokens values, e.g. 128,256')
@click.option('--temperature', type=float, help='Sampling temperature')
@click.option('--requests', '-n', 'repetitions', type=int, help='Requests per test case')
@click.option('--timeout', type=float, help='Per-request timeout in seconds')
@click.option('--max-retries', type=int, help='Maximum attempts per request')
@click.option('--primary-url', help='Base URL of the primary backend')
@click.option('--secondary-url', help='Base URL of the secondary backend')
@click.option('--model', '-m', 'model_name', help='Model name sent with every request')
@click.option('--simple-prompt', help='Prompt used for the simple test')
@click.option('--complex-prompt', help='Prompt used for the complex test')
@click.option('--output-dir', '-o', help='Directory receiving the run folder')
@click.option('--dry-run', is_flag=True,
              help='Use synthetic responses instead of calling the endpoints')
@click.option('--abort-on-failure', 'abort_on_batch_failure', is_flag=True,
              help='Stop the sweep after the first test case with no successful request')
@click.option('--verbose', '-v', is_flag=True, help='Print every request')
@click.pass_context
def run(ctx, verbose: bool, **options):
    """Run the benchmark sweep."""
    # Unset flags must not override the config file
    for flag in ('dry_run', 'abort_on_batch_failure'):
        if not options[flag]:
            options[flag] = None
    overrides = {**ctx.obj['overrides'], **options}

    try:
        config = load_config_with_auto_discovery(
            config_file=ctx.obj['config_file'],
            config_overrides=overrides
        )
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    store = ResultStore.create_run(config.output_dir, config)
    benchmark_logger = setup_logging(config, log_file=config.log_file or store.log_path)
    logger = benchmark_logger.get_logger(__name__)

    engines = ", ".join(endpoint.name for endpoint in config.selected_endpoints())
    click.secho("=== LLM Inference Engines Performance Benchmark ===", fg='green')
    click.echo(f"Engines: {engines}")
    click.echo(f"Token counts: {', '.join(str(t) for t in config.token_counts)}")
    click.echo(f"Requests per test: {config.repetitions}")
    if config.dry_run:
        click.secho("Dry run: no network calls will be made", fg='yellow')
    click.echo(f"Results directory: {store.run_path}")
    click.echo()

    orchestrator = SweepOrchestrator(
        config,
        store=store,
        request_callback=echo_request if verbose else None,
        batch_callback=echo_batch,
        progress_logger=benchmark_logger.get_progress_logger()
    )

    try:
        summary = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        click.secho("=== Benchmark Interrupted ===", fg='yellow')
        click.echo(f"Partial results: {store.results_path}")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        logger.error("Benchmark failed", error=str(e), exc_info=e)
        click.echo(f"Error running benchmark: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    if summary.state == RunState.COMPLETED:
        click.secho("=== Benchmark Complete ===", fg='green')
    elif summary.state == RunState.INTERRUPTED:
        click.secho("=== Benchmark Interrupted ===", fg='yellow')
    else:
        click.secho("=== Benchmark Aborted ===", fg='red')

    if summary.degraded_engines:
        click.secho(f"Skipped unreachable engines: {', '.join(summary.degraded_engines)}", fg='yellow')
    click.echo(f"Test cases: {summary.total_cases} total, {summary.failed_cases} failed")
    click.echo(f"CSV results: {store.results_path}")
    click.echo(f"Log file: {benchmark_logger.log_file}")

    if summary.results:
        click.echo()
        click.secho("=== Quick Comparison ===", fg='yellow')
        echo_results_table(store.load_results())

    sys.exit(exit_code_for(summary.state))


@cli.command()
@click.argument('run_dir', required=False)
@click.option('--output-dir', '-o', default='./benchmarks', show_default=True,
              help='Where to look for the latest run when RUN_DIR is omitted')
def show(run_dir: Optional[str], output_dir: str):
    """Show the results of a run (latest run by default)."""
    path = _resolve_run_dir(run_dir, output_dir)
    try:
        store = ResultStore.open(path)
        df = store.load_results()
    except Exception as e:
        click.echo(f"Error showing run: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    click.echo(f"Run: {store.run_path}")
    summary = store.load_summary()
    if summary:
        click.echo(f"State: {summary['state']}")
        click.echo(f"Test cases: {summary['total_cases']} total, {summary['failed_cases']} failed")
        if summary.get('degraded_engines'):
            click.echo(f"Skipped engines: {', '.join(summary['degraded_engines'])}")
    click.echo()
    echo_results_table(df)


@cli.command()
@click.argument('run_dir', required=False)
@click.option('--output-dir', '-o', default='./benchmarks', show_default=True,
              help='Where to look for the latest run when RUN_DIR is omitted')
def compare(run_dir: Optional[str], output_dir: str):
    """Compare engines side by side for each prompt type and token count."""
    path = _resolve_run_dir(run_dir, output_dir)
    try:
        df = ResultStore.open(path).load_results()
    except Exception as e:
        click.echo(f"Error comparing engines: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    comparison = compare_engines(df)
    if comparison.empty:
        click.echo("No successful results to compare.")
        return
    click.echo(comparison.to_string(na_rep='-'))


@cli.command()
@click.argument('run_dir')
@click.option('--output', '-o', help='Output file path')
@click.option('--format', type=click.Choice(['csv', 'json']), default='csv', help='Output format')
def export(run_dir: str, output: Optional[str], format: str):
    """Export the results of a run to a file."""
    try:
        store = ResultStore.open(run_dir)
        output = output or f"{store.run_path.name}.{format}"
        count = store.export_results(output, format)
    except Exception as e:
        click.echo(f"Error exporting run: {e}", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(f"Exported {count} records to {output}")


@cli.command(name='init-config')
@click.argument('path')
@click.option('--format', type=click.Choice(['yaml', 'json']), default='yaml', help='Output format')
@click.pass_context
def init_config(ctx, path: str, format: str):
    """Write the effective configuration to PATH."""
    config_file = ctx.obj['config_file'] or find_config_file()
    manager = ConfigManager(config_file)
    try:
        manager.load_config(ctx.obj['overrides'])
        manager.save_config(path, format)
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(f"Configuration written to {path}")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
