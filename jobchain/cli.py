"""
CLI interface for jobchain.

Provides commands to discover, inspect, and run chains.

Chains are YAML (or JSON) files found on the configured search paths and
addressed by dotted name: `orders.fulfil` is orders/fulfil.yml. `run` drives
a chain in-process: every job target is imported and called with its
resolved params, and completions cascade until the terminal job finishes.
"""

import json

import click

from jobchain import __version__


def _get_config(ctx):
    """Loaded config, or exit with the load error."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'jobchain init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _get_registry(ctx):
    from jobchain.registry import ChainRegistry

    config = _get_config(ctx)
    return ChainRegistry(config.search_paths(), default_lifetime=config.lifetime)


def _load_chain(ctx, name: str):
    from jobchain.errors import JobChainError

    registry = _get_registry(ctx)
    try:
        return registry.load(name)
    except JobChainError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="jobchain")
@click.pass_context
def main(ctx):
    """
    jobchain - Declarative chains of dependent jobs.

    Define jobs and the data they pass to each other in YAML; jobchain
    dispatches each job as soon as everything it references is available.
    """
    from jobchain.config import load_config
    from jobchain.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except Exception as e:
        # init does not need a config; other commands report this error
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(config.log_level, config.log_format, config.log_file)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize jobchain configuration."""
    import yaml

    from jobchain.config import JobChainConfig, get_jobchain_home

    home = get_jobchain_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = JobChainConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# JOB_CHAIN_CACHE=redis\n# JOB_CHAIN_REDIS_URL=redis://localhost:6379/0\n")

    click.echo(f"Initialized jobchain config at {cfg_path}")


@main.group("chains")
def chains_group():
    """Inspect chain definitions."""
    pass


@chains_group.command("list")
@click.pass_context
def list_chains(ctx):
    """List available chains."""
    registry = _get_registry(ctx)
    names = registry.list_chains()

    if not names:
        click.echo("No chains found in: " + ", ".join(str(p) for p in registry.paths))
        return

    for name in names:
        click.echo(name)


@chains_group.command("show")
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON instead of YAML")
@click.pass_context
def show_chain(ctx, name: str, as_json: bool):
    """Show a chain definition."""
    from jobchain.registry import ChainRegistry, dump_yaml

    chain_def = _load_chain(ctx, name)

    click.echo(f"Chain: {chain_def.name}")
    click.echo(f"Terminal job: {chain_def.done}")
    click.echo(f"Hash: {ChainRegistry.compute_hash(chain_def)}")
    click.echo()
    if as_json:
        click.echo(json.dumps(chain_def.to_dict(), indent=2))
    else:
        click.echo(dump_yaml(chain_def), nl=False)


@chains_group.command("params")
@click.argument("name")
@click.pass_context
def chain_params(ctx, name: str):
    """List the inputs a chain uses."""
    from jobchain.schemas import input_refs

    chain_def = _load_chain(ctx, name)
    seen = set()
    for job in chain_def.jobs:
        for ref in input_refs(job.params):
            if ref.name in seen:
                continue
            seen.add(ref.name)
            if ref.required:
                click.echo(f"{ref.name} (required)")
            else:
                click.echo(f"{ref.name} (default: {ref.default})")


@main.command("run")
@click.argument("name")
@click.option("-p", "--param", "params", multiple=True, help="Chain input as key=value (repeatable)")
@click.option("--key", help="Run id to use (correlation key)")
@click.option("--user", help="User substituted into channel routes")
@click.option("--dry-run", is_flag=True, help="Show the initially dispatched jobs without running them")
@click.pass_context
def run(ctx, name: str, params: tuple, key: str, user: str, dry_run: bool):
    """
    Run a chain in-process.

    NAME is the dotted chain name.

    Examples:

        jobchain run chain1

        jobchain run orders.fulfil -p order_id=42 --user alice

        jobchain run chain1 --dry-run
    """
    from jobchain.chain import JobChain
    from jobchain.dispatcher import LocalDispatcher, RecordingDispatcher
    from jobchain.errors import MissingInputError
    from jobchain.notifier import CompositeNotifier, LoggingNotifier, RecordingNotifier
    from jobchain.schemas import ChainDone
    from jobchain.state_store import create_state_store
    from jobchain.utils import parse_assignments, print_status

    config = _get_config(ctx)
    chain_def = _load_chain(ctx, name)

    try:
        inputs = parse_assignments(params)
    except ValueError as e:
        raise click.UsageError(str(e))

    dispatcher = RecordingDispatcher() if dry_run else LocalDispatcher()
    events = RecordingNotifier()
    notifier = CompositeNotifier([LoggingNotifier(), events])
    job_chain = JobChain(chain_def, create_state_store(config), dispatcher, notifier, user=user)

    if dry_run:
        click.echo("=" * 50)
        click.echo("=== DRY RUN MODE === (nothing is executed)")
        click.echo("=" * 50)

    missing = None
    try:
        run_id = job_chain.start(inputs, key=key)
    except MissingInputError as e:
        missing = e
        run_id = job_chain.run_id

    if dry_run:
        for manifest in dispatcher.submitted:
            click.echo(f"{manifest.job_id} -> {manifest.target} {json.dumps(manifest.params, default=str)}")
    else:
        dispatcher.run_pending()
        status = job_chain.status()
        responses = {job_id: job_chain.response(job_id) for job_id in status}
        print_status(f"{chain_def.name} [{run_id}]", status, responses)

    if missing is not None:
        click.echo(f"✗ {missing}", err=True)
        raise SystemExit(1)

    if dry_run:
        return

    if job_chain.is_done():
        done = events.of_type(ChainDone)[-1]
        click.echo(f"✓ {chain_def.name} completed: {json.dumps(done.response, default=str)}")
    else:
        click.echo(f"✗ {chain_def.name} did not complete", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
