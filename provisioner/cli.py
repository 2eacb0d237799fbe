import asyncio
import json
import sys

import click


@click.group()
def main() -> None:
    """Provisioner - scheduled deploy / destroy of infrastructure workspaces."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from PROVISIONER_HOST or 127.0.0.1).")
@click.option("--port", default=None, type=int, help="Bind port (default: from PROVISIONER_PORT or 8080).")
def daemon(host: str | None, port: int | None) -> None:
    """Start the scheduler daemon and its HTTP API."""
    import uvicorn

    from provisioner.runtime.settings import get_settings

    settings = get_settings()

    uvicorn.run(
        "provisioner.runtime.app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Drain timeout plus a buffer for the final state flush.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 30,
    )


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Templates (direct registry access, no daemon required)
# ---------------------------------------------------------------------------


def _template_registry():
    from provisioner.runtime.fetchers import FetcherRegistry, default_fetchers
    from provisioner.runtime.log import setup_logging
    from provisioner.runtime.managers.templates import TemplateRegistry
    from provisioner.runtime.settings import get_settings

    settings = get_settings()
    setup_logging(settings.log_level, json_lines=settings.log_json)
    return TemplateRegistry(
        settings.templates_path,
        fetchers=FetcherRegistry(default_fetchers(timeout=settings.fetch_timeout)),
        fetch_timeout=settings.fetch_timeout,
    )


def _run_template_op(coro_factory):
    """Run a registry coroutine, turning domain errors into a CLI failure."""
    from provisioner.runtime.errors import ProvisionerError

    try:
        return asyncio.run(coro_factory(_template_registry()))
    except ProvisionerError as exc:
        raise click.ClickException(f"[{exc.kind}] {exc}") from None


@main.group()
def template() -> None:
    """Manage the template registry."""


@template.command("add")
@click.argument("name")
@click.argument("source_url")
@click.option("--sub-path", default="", help="Directory within the source holding the configuration.")
@click.option("--ref", default="", help="Branch, tag or commit (default: main).")
@click.option("--description", default="", help="Human-readable description.")
def template_add(name: str, source_url: str, sub_path: str, ref: str, description: str) -> None:
    """Fetch SOURCE_URL and register it as NAME."""
    record = _run_template_op(
        lambda reg: reg.add(name, source_url, sub_path=sub_path, ref=ref, description=description)
    )
    click.echo(f"Template '{record.name}' added (version {record.version}).")


@template.command("list")
def template_list() -> None:
    """List registered templates."""
    records = _run_template_op(lambda reg: reg.list())
    if not records:
        click.echo("No templates registered.")
        return
    for record in records:
        click.echo(f"{record.name}\t{record.version or '-'}\t{record.source_url}")


@template.command("show")
@click.argument("name")
def template_show(name: str) -> None:
    """Show one template record."""
    record = _run_template_op(lambda reg: reg.get(name))
    _echo_json(record.model_dump(mode="json"))


@template.command("update")
@click.argument("name", required=False)
@click.option("--all", "update_all", is_flag=True, help="Update every registered template.")
def template_update(name: str | None, update_all: bool) -> None:
    """Re-fetch NAME (or every template with --all)."""
    from provisioner.runtime.errors import ProvisionerError

    if not name and not update_all:
        raise click.UsageError("Give a template NAME or --all.")

    async def _update(reg) -> int:
        names = [r.name for r in await reg.list()] if update_all else [name]
        failures = 0
        for each in names:
            try:
                record = await reg.update(each)
            except ProvisionerError as exc:
                failures += 1
                click.echo(f"{each}: failed [{exc.kind}] {exc}", err=True)
                continue
            click.echo(f"{each}: version {record.version}")
        return failures

    if _run_template_op(_update):
        sys.exit(1)


@template.command("remove")
@click.argument("name")
@click.option("--force", is_flag=True, help="Remove even if workspaces reference it.")
def template_remove(name: str, force: bool) -> None:
    """Remove NAME from the registry and delete its cache."""
    from provisioner.runtime.config_source import DirectoryConfigSource
    from provisioner.runtime.settings import get_settings

    source = DirectoryConfigSource(get_settings().workspaces_path)

    def in_use(template_name: str) -> list[str]:
        return [d.name for d in source.load().definitions if d.template_name == template_name]

    _run_template_op(lambda reg: reg.remove(name, force=force, in_use=in_use))
    click.echo(f"Template '{name}' removed.")


@template.command("validate")
@click.argument("name")
def template_validate(name: str) -> None:
    """Structurally check the cached content of NAME."""
    files = _run_template_op(lambda reg: reg.validate(name))
    click.echo(f"Template '{name}' is valid ({len(files)} files checked).")


# ---------------------------------------------------------------------------
# Workspaces (through the running daemon)
# ---------------------------------------------------------------------------


def _daemon_request(ctx: click.Context, method: str, path: str, **kwargs) -> object:
    import httpx

    url: str = ctx.obj["url"]
    try:
        with httpx.Client(base_url=url, timeout=None) as client:
            response = client.request(method, f"/api{path}", **kwargs)
    except httpx.HTTPError as exc:
        raise click.ClickException(f"Cannot reach daemon at {url}: {exc}") from None

    if response.status_code >= 400:
        try:
            body = response.json()
            message = f"[{body['kind']}] {body['message']}"
        except (ValueError, KeyError, TypeError):
            message = response.text or response.reason_phrase
        raise click.ClickException(f"{response.status_code}: {message}")
    if response.status_code == 204 or not response.content:
        return None
    return response.json()


@main.group()
@click.option("--url", default=None, help="Daemon URL (default: from PROVISIONER_HOST / PROVISIONER_PORT).")
@click.pass_context
def workspace(ctx: click.Context, url: str | None) -> None:
    """Operate on workspaces through the running daemon."""
    from provisioner.runtime.settings import get_settings

    ctx.ensure_object(dict)
    ctx.obj["url"] = url or get_settings().daemon_url


def _action(ctx: click.Context, name: str, action: str, wait: bool) -> None:
    result = _daemon_request(ctx, "POST", f"/workspaces/{name}/{action}", params={"wait": wait})
    _echo_json(result)
    if wait and isinstance(result, dict) and not result.get("success", False):
        sys.exit(1)


@workspace.command("deploy")
@click.argument("name")
@click.option("--no-wait", is_flag=True, help="Return as soon as the action has started.")
@click.pass_context
def workspace_deploy(ctx: click.Context, name: str, no_wait: bool) -> None:
    """Deploy NAME now, bypassing its schedule."""
    _action(ctx, name, "deploy", not no_wait)


@workspace.command("destroy")
@click.argument("name")
@click.option("--no-wait", is_flag=True, help="Return as soon as the action has started.")
@click.pass_context
def workspace_destroy(ctx: click.Context, name: str, no_wait: bool) -> None:
    """Destroy NAME now, bypassing its schedule."""
    _action(ctx, name, "destroy", not no_wait)


@workspace.command("status")
@click.argument("name", required=False)
@click.pass_context
def workspace_status(ctx: click.Context, name: str | None) -> None:
    """Show NAME's status, or a summary of every workspace."""
    if name:
        _echo_json(_daemon_request(ctx, "GET", f"/workspaces/{name}/status"))
        return
    for snapshot in _daemon_request(ctx, "GET", "/workspaces/list") or []:
        flags = " (busy)" if snapshot["busy"] else ""
        disabled = "" if snapshot["enabled"] else " [disabled]"
        outdated = " (template outdated)" if snapshot.get("template_outdated") else ""
        click.echo(f"{snapshot['name']}\t{snapshot['state']['status']}{flags}{disabled}{outdated}")


@workspace.command("logs")
@click.argument("name")
@click.pass_context
def workspace_logs(ctx: click.Context, name: str) -> None:
    """Print the output of NAME's most recent action."""
    result = _daemon_request(ctx, "GET", f"/workspaces/{name}/logs")
    click.echo(result["output"] if isinstance(result, dict) else "", nl=False)


@workspace.command("reload")
@click.pass_context
def workspace_reload(ctx: click.Context) -> None:
    """Make the daemon re-read workspace definitions now."""
    _echo_json(_daemon_request(ctx, "POST", "/workspaces/reload"))


if __name__ == "__main__":
    main()
