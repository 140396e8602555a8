from flask import Flask
from .config import config_by_name
from .extensions import db, migrate
from .errors import register_error_handlers
from .cli import tree_cli
from .domain.slugs import SlugRules
from .application.site_structure.service import SiteStructureService


def create_app(config_name: str = "development", *, content_linkage=None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # -------------------------------------------------
    # Extensions
    # -------------------------------------------------
    db.init_app(app)
    migrate.init_app(app, db)

    # Registers the tables with the metadata Flask-Migrate compares against
    from .models import audit_log, site_node  # noqa: F401

    # -------------------------------------------------
    # Site tree service
    # -------------------------------------------------
    app.extensions["site_tree"] = SiteStructureService(
        rules=SlugRules.from_config(app.config),
        content_linkage=content_linkage,
        max_depth=app.config["SITE_TREE_MAX_DEPTH"],
    )

    register_error_handlers(app)
    app.cli.add_command(tree_cli)

    return app
