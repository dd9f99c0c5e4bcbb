import click


@click.group()
def main() -> None:
    """Shellrelay - remote terminal and agent CLI sessions over WebSocket."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from RELAY_HOST or 127.0.0.1).")
@click.option("--port", default=None, type=int, help="Bind port (default: from RELAY_PORT or 3001).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the relay server."""
    import uvicorn

    from shellrelay.relay_server.settings import RelaySettings

    settings = RelaySettings()

    uvicorn.run(
        "shellrelay.relay_server.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Open channels are closed by the client; sessions are killed in the
        # lifespan shutdown, which needs the kill grace period on top.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + int(settings.kill_grace_period) + 2,
    )


# ---------------------------------------------------------------------------
# Client commands against a running server
# ---------------------------------------------------------------------------


def _client(url: str, token: str | None):
    import httpx

    from shellrelay.relay_server.settings import RelaySettings

    token = token or RelaySettings().auth_token
    if not token:
        raise click.UsageError("No token given (use --token or RELAY_AUTH_TOKEN).")
    return httpx.Client(base_url=url, headers={"Authorization": f"Bearer {token}"}, timeout=10.0)


def _request(url: str, token: str | None, method: str, path: str, **kwargs):
    import httpx

    with _client(url, token) as client:
        try:
            response = client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise click.ClickException(f"Cannot reach {url}: {exc}") from exc
    if response.status_code >= 400:
        detail = response.json().get("detail") if response.headers.get("content-type") == "application/json" else None
        raise click.ClickException(f"{response.status_code}: {detail or response.text}")
    return response.json()


_url_option = click.option("--url", default="http://127.0.0.1:3001", help="Relay server URL.")
_token_option = click.option("--token", default=None, help="Bearer token (default: RELAY_AUTH_TOKEN).")


@main.command()
@_url_option
@_token_option
def sessions(url: str, token: str | None) -> None:
    """List terminal sessions held by the server."""
    entries = _request(url, token, "GET", "/api/shell/sessions")
    if not entries:
        click.echo("No sessions.")
        return
    for entry in entries:
        status = f"exited({entry['exit_code']})" if entry["exited"] else entry["state"]
        fields = (entry["session_key"], entry["provider"], f"pid={entry['pid']}", status, entry["project_path"])
        click.echo("\t".join(str(f) for f in fields))


@main.command()
@_url_option
@_token_option
@click.argument("project_path", type=click.Path(file_okay=False, resolve_path=True))
def restart(url: str, token: str | None, project_path: str) -> None:
    """Kill every session of PROJECT_PATH so the next client starts fresh."""
    result = _request(url, token, "POST", "/api/shell/restart", json={"projectPath": project_path})
    removed = result["removed"]
    click.echo(f"Evicted {len(removed)} session(s).")
    for key in removed:
        click.echo(f"  {key}")


@main.command()
@_url_option
@_token_option
@click.argument("session_key")
def abort(url: str, token: str | None, session_key: str) -> None:
    """Kill and evict a single session."""
    from urllib.parse import quote

    _request(url, token, "POST", f"/api/shell/sessions/{quote(session_key, safe='')}/abort")
    click.echo(f"Aborted {session_key}.")


if __name__ == "__main__":
    main()
