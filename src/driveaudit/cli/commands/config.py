"""
Configuration management commands.
"""

from pathlib import Path

import click
import yaml

from driveaudit.config import Settings, get_settings


@click.group()
def config():
    """Configuration management."""
    pass


@config.command("show")
def config_show():
    """Display current configuration."""
    click.echo(get_settings().model_dump_json(indent=2))


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option(
    "--file", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("config.yaml"),
    show_default=True,
    help="YAML file to update",
)
def config_set(key: str, value: str, config_path: Path):
    """
    Set a configuration value.

    KEY is a dot-separated path like 'scan.batch_size' or
    'delegation.key_file'. VALUE is parsed as YAML, so numbers and
    booleans keep their type.

    Examples:
        driveaudit config set scan.batch_size 200
        driveaudit config set delegation.allow_mutations true
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}
        config_path.parent.mkdir(parents=True, exist_ok=True)

    keys = key.split(".")
    current = data
    for k in keys[:-1]:
        if k not in current:
            current[k] = {}
        elif not isinstance(current[k], dict):
            raise click.ClickException(f"Cannot set nested key under non-dict value at '{k}'")
        current = current[k]
    current[keys[-1]] = yaml.safe_load(value)

    try:
        Settings(**data)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    with open(config_path, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    get_settings.cache_clear()
    click.echo(f"Set {key} = {current[keys[-1]]!r} in {config_path}")
