"""
Operator commands for the site tree, mounted as `flask tree ...`.
"""
import json

import click
from flask.cli import AppGroup

from .application.site_structure.service import get_site_structure_service

tree_cli = AppGroup("tree", help="Inspect and repair website site trees.")

FORMAT_OPTION = click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)


def _echo_report(report, output_format):
    if output_format == "json":
        click.echo(json.dumps(report, indent=2, default=str))
        return

    click.echo("valid" if report["valid"] else "INVALID")
    for error in report["errors"]:
        click.echo(f"  error: {error}")
    for warning in report["warnings"]:
        click.echo(f"  warning: {warning}")
    for key, value in report["summary"].items():
        click.echo(f"  {key}: {value}")


def _echo_node(item, indent=0):
    click.echo(f"{'  ' * indent}{item['full_path']}  [{item['title']}] #{item['position']}")
    for child in item["children"]:
        _echo_node(child, indent + 1)


@tree_cli.command("validate")
@click.argument("website_id")
@FORMAT_OPTION
def validate(website_id, output_format):
    """Check a website's tree and exit non-zero when it is invalid."""
    report = get_site_structure_service().validate_tree(website_id)
    _echo_report(report, output_format)
    if not report["valid"]:
        raise SystemExit(1)


@tree_cli.command("repair")
@click.argument("website_id")
@FORMAT_OPTION
def repair(website_id, output_format):
    """Repair orphans, cycles, duplicate slugs, paths and positions."""
    report = get_site_structure_service().repair_tree(website_id)
    _echo_report(report, output_format)
    if not report["valid"]:
        raise SystemExit(1)


@tree_cli.command("show")
@click.argument("website_id")
@FORMAT_OPTION
def show(website_id, output_format):
    """Print the tree, one node per line."""
    tree = get_site_structure_service().get_tree(website_id)
    if output_format == "json":
        click.echo(json.dumps(tree, indent=2, default=str))
        return
    _echo_node(tree)


@tree_cli.command("stats")
@click.argument("website_id")
def stats(website_id):
    """Print node counts and depth figures."""
    for key, value in get_site_structure_service().get_tree_statistics(website_id).items():
        click.echo(f"{key}: {value}")
