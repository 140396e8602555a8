import os
from dotenv import load_dotenv

load_dotenv()

DEFAULT_RESERVED_SLUGS = "api,admin,static,_next,public,favicon.ico,robots.txt,sitemap.xml"


def _csv(value):
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


class BaseConfig:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Every tree mutation relies on the database detecting write skew
    SQLALCHEMY_ENGINE_OPTIONS = {"isolation_level": "SERIALIZABLE"}

    # -------------------------------------------------
    # Site tree rules
    # -------------------------------------------------
    SITE_TREE_RESERVED_SLUGS = _csv(
        os.getenv("SITE_TREE_RESERVED_SLUGS", DEFAULT_RESERVED_SLUGS)
    )
    SITE_TREE_SLUG_PATTERN = os.getenv("SITE_TREE_SLUG_PATTERN", r"^[a-z0-9-]+$")
    SITE_TREE_SLUG_MAX_ATTEMPTS = int(os.getenv("SITE_TREE_SLUG_MAX_ATTEMPTS", "100"))
    SITE_TREE_SLUG_MAX_LENGTH = int(os.getenv("SITE_TREE_SLUG_MAX_LENGTH", "255"))
    SITE_TREE_MAX_DEPTH = int(os.getenv("SITE_TREE_MAX_DEPTH", "64"))

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv("DEV_DATABASE_URI", "sqlite:///site_tree_dev.db")

class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URI")

class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"

config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
