import asyncio
import logging
import sys

import click

from stormbox.constants import APP_NAME
from stormbox.infra.async_client import AsyncMailClient
from stormbox.infra.config_store import Config
from stormbox.infra.jmap_client import JmapClient
from stormbox.services.mail_session import MailSession


def print_messages(session, limit=20):
    mailbox = session.current_mailbox
    label = session.directory.display_name(mailbox) if mailbox else "?"
    click.echo(f"{label}: {len(session.messages)} loaded of {session.total_count}")
    for message in session.visible_messages[:limit]:
        marker = " " if message.seen else "*"
        click.echo(f" {marker} {message.received_at or '':<20} {message.from_text[:30]:<30} {message.subject}")


async def run(config, username, password, folder, watch):
    client = JmapClient(config.get("server_url"), username=username, password=password)
    session = MailSession(AsyncMailClient(client), config=config)
    try:
        if not await session.connect():
            click.echo(f"{session.status} {session.error}", err=True)
            return 1
        if not await session.initialize():
            click.echo(session.error, err=True)
            return 1
        if not await session.switch_folder_by_name(folder):
            click.echo(f"Unknown folder: {folder}", err=True)
            return 1
        print_messages(session)
        while watch:
            await asyncio.sleep(session.sync.poll_interval_sec)
            click.echo(session.status)
            print_messages(session)
        return 0
    finally:
        session.close()


@click.command(help=f"{APP_NAME} console client.")
@click.option("--folder", default="inbox", show_default=True, help="Folder slug to open.")
@click.option("--watch", is_flag=True, help="Keep polling for changes until interrupted.")
@click.option("--username", default=None, help="Account name (defaults to the configured one).")
def main(folder, watch, username):
    config = Config()
    logging.basicConfig(
        level=getattr(logging, str(config.get("log_level") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.load_error:
        logging.getLogger(__name__).warning("config not loaded: %s", config.load_error)
    username = username or config.get("username") or click.prompt("Username")
    password = click.prompt("Password", hide_input=True)
    try:
        exit_code = asyncio.run(run(config, username, password, folder, watch))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
