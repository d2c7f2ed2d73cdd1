"""Flask application factory."""

import json
import logging
import os
from dataclasses import dataclass

from flask import Flask
from flask_cors import CORS

from services.analytics import AnalyticsAggregator
from services.batch_fill import BatchFillEngine
from services.cache_manager import CacheManager
from services.github_client import GitHubClient
from services.jira_client import JiraClient
from services.orchestrator import CacheOrchestrator
from services.store import LayeredStore, MemoryStore, RedisStore

CONFIG_PATH = os.path.join(os.path.dirname(__file__), "..", "config", "cache-config.json")

DEFAULT_CONFIG = {
    "JIRA_SERVER": "",
    "JIRA_EMAIL": "",
    "JIRA_TOKEN": "",
    "GITHUB_TOKEN": "",
    "GITHUB_API_URL": "https://api.github.com",
    "GITHUB_OWNER": "",
    "GITHUB_REPO": "",
    "REDIS_URL": "",
    "CACHE_MAX_KEYS": 5000,
    "FILL_MAX_WORKERS": 6,
    "REFRESH_MAX_WORKERS": 2,
    "LOG_LEVEL": "INFO",
}

INT_SETTINGS = {"CACHE_MAX_KEYS", "FILL_MAX_WORKERS", "REFRESH_MAX_WORKERS"}


@dataclass
class SprintCacheServices:
    """Everything the blueprints need, built once per app."""

    cache: CacheManager
    batch_engine: BatchFillEngine
    orchestrator: CacheOrchestrator
    aggregator: AnalyticsAggregator


def load_cache_config(app, overrides=None):
    """Load settings from config/cache-config.json, then the environment.

    Explicit overrides (used by tests) win over both.
    """
    app.config.update(DEFAULT_CONFIG)

    config_path = (overrides or {}).get("CACHE_CONFIG_PATH", CONFIG_PATH)
    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                file_config = json.load(f)
            app.config.update({k: v for k, v in file_config.items() if k in DEFAULT_CONFIG})
            app.logger.info(f"Loaded cache config from {config_path}")
        except (json.JSONDecodeError, IOError) as e:
            app.logger.warning(f"Failed to load cache config: {e}")

    for name in DEFAULT_CONFIG:
        if name in os.environ:
            app.config[name] = os.environ[name]

    if overrides:
        app.config.update(overrides)

    for name in INT_SETTINGS:
        try:
            app.config[name] = int(app.config[name])
        except (TypeError, ValueError):
            app.logger.warning(f"Invalid {name}={app.config[name]!r}, using default")
            app.config[name] = DEFAULT_CONFIG[name]


def configure_logging(app):
    level = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    if not logging.getLogger().handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    logging.getLogger("services").setLevel(level)
    app.logger.setLevel(level)


def build_store(app):
    memory = MemoryStore(maxsize=app.config["CACHE_MAX_KEYS"])
    redis_url = app.config.get("REDIS_URL")
    if not redis_url:
        app.logger.info("REDIS_URL not set, using in-process cache only")
        return memory

    app.logger.info("Using layered cache: in-process tier over Redis")
    return LayeredStore(memory, RedisStore.from_url(redis_url))


def build_services(app) -> SprintCacheServices:
    """Wire store, clients and the cache core from app config."""
    cache = CacheManager(build_store(app))
    jira_client = JiraClient(
        app.config["JIRA_SERVER"], app.config["JIRA_EMAIL"], app.config["JIRA_TOKEN"]
    )
    github_client = GitHubClient(
        app.config["GITHUB_TOKEN"] or None, app.config["GITHUB_API_URL"]
    )
    batch_engine = BatchFillEngine(cache, max_workers=app.config["FILL_MAX_WORKERS"])
    orchestrator = CacheOrchestrator(
        cache, jira_client, github_client,
        max_refresh_workers=app.config["REFRESH_MAX_WORKERS"]
    )
    aggregator = AnalyticsAggregator(orchestrator, batch_engine, jira_client, github_client)
    return SprintCacheServices(cache, batch_engine, orchestrator, aggregator)


def get_services(app) -> SprintCacheServices:
    return app.extensions["sprint_cache"]


def create_app(config=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    load_cache_config(app, config)
    configure_logging(app)

    # Enable CORS for frontend
    CORS(app, resources={
        r"/api/*": {
            "origins": ["http://localhost:5173", "http://127.0.0.1:5173"],
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type"]
        }
    })

    app.extensions["sprint_cache"] = build_services(app)

    # Register blueprints
    from app.api import analytics, cache
    app.register_blueprint(analytics.bp)
    app.register_blueprint(cache.bp)

    # Health check endpoint
    @app.route("/health")
    def health():
        cache_ok = get_services(app).cache.available()
        return {"status": "ok", "cache": "ok" if cache_ok else "unavailable"}

    return app
