from __future__ import annotations

import typer

from .commands import setup_cmd
from .commands.access_cmd import app as access_app
from .commands.mail_cmd import app as mail_app
from .commands.ssh_cmd import app as ssh_app
from .logging_ import setup_logging


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="invisible",
        help="Invisible platform setup and maintenance CLI",
        no_args_is_help=True,
    )

    app.command("setup")(setup_cmd.setup)
    app.command("stages")(setup_cmd.stages)
    app.command("teardown")(setup_cmd.teardown_cmd)
    app.add_typer(access_app, name="access")
    app.add_typer(ssh_app, name="ssh")
    app.add_typer(mail_app, name="mail")

    @app.callback()
    def _main(
            verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
    ):
        setup_logging(verbose)

    return app


app = _build_app()
