import os
import logging

import click
from flask import Flask, jsonify

from dealflow.config import config_by_name
from dealflow.extensions import db, migrate


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from dealflow import models  # noqa: F401

    # --- Register blueprints ---
    from dealflow.blueprints.pipeline import pipeline_bp

    app.register_blueprint(pipeline_bp)

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error", "code": "server_error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-pipeline")
    @click.option("--rotting-days", type=int, default=None,
                  help="Rotting threshold for the open stages.")
    def seed_pipeline(rotting_days):
        """Create the default sales pipeline stages.

        Does nothing if any stage already exists.

        Usage:
            flask seed-pipeline
            flask seed-pipeline --rotting-days 21
        """
        from dealflow.services.stage_service import seed_default_stages

        if rotting_days is None:
            rotting_days = app.config["PIPELINE_DEFAULT_ROTTING_DAYS"]

        created = seed_default_stages(rotting_days=rotting_days)
        if not created:
            click.echo("Pipeline stages already exist, nothing to do.")
            return

        click.echo("")
        click.echo("=" * 60)
        click.echo("Pipeline stages created!")
        click.echo("=" * 60)
        for stage in created:
            if stage.is_terminal:
                click.echo(f"  {stage.name:<14} (terminal)")
            else:
                click.echo(
                    f"  {stage.position}. {stage.name:<14} "
                    f"p={stage.win_probability}%  rots after {stage.rotting_days}d"
                )
        click.echo("=" * 60)

    @app.cli.command("rotting-report")
    @click.option("--min-level", type=click.IntRange(1, 3), default=2,
                  help="Lowest rotting level to list (1=warning, 2=rotting, 3=critical).")
    def rotting_report(min_level):
        """List open deals that have gone stale in their stage.

        Usage:
            flask rotting-report
            flask rotting-report --min-level 1
        """
        from datetime import datetime, timezone

        from dealflow.services import deal_service, rotting

        now = datetime.now(timezone.utc)
        stale = []
        for deal in deal_service.list_open_deals():
            level = rotting.rotting_level(deal, deal.stage, now)
            if level >= min_level:
                stale.append((level, deal))

        if not stale:
            click.echo("No stale deals.")
            return

        stale.sort(key=lambda item: (-item[0], item[1].title))
        click.echo(f"Found {len(stale)} stale deal(s):\n")
        for level, deal in stale:
            days = rotting.days_since_activity(deal, now)
            click.echo(
                f"  [{rotting.rotting_label(level).upper():<8}] {deal.title} "
                f"— {deal.stage.name}, idle {days}d (${float(deal.value):,.2f})"
            )
