import click


@click.group()
def main() -> None:
    """TreeChat - workspace-scoped hierarchical document store."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from TREECHAT_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from TREECHAT_PORT or 8000).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the data runtime HTTP server."""
    import uvicorn

    from treechat.data_runtime.settings import TreeChatSettings

    settings = TreeChatSettings()

    uvicorn.run(
        "treechat.data_runtime.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
    )


# ---------------------------------------------------------------------------
# Document store management
# ---------------------------------------------------------------------------


@main.group()
def store() -> None:
    """Document store management commands."""


@store.command("create-table")
@click.option("--table", default=None, help="Table name (default: from TREECHAT_DYNAMODB_TABLE).")
def create_table(table: str | None) -> None:
    """Create the DynamoDB table if it does not exist."""
    import anyio

    from treechat.data_runtime.app import create_document_store
    from treechat.data_runtime.log import setup_logging
    from treechat.data_runtime.settings import TreeChatSettings

    settings = TreeChatSettings(document_store="dynamodb")
    if table:
        settings.dynamodb_table = table
    setup_logging(settings.log_level)

    document_store = create_document_store(settings)
    created = anyio.run(document_store.ensure_table)  # type: ignore[attr-defined]
    if created:
        click.echo(f"Table {settings.dynamodb_table} created.")
    else:
        click.echo(f"Table {settings.dynamodb_table} already exists.")


if __name__ == "__main__":
    main()
