from __future__ import annotations

import json

from celery import Celery
from flask import Flask

from unify_app.unifier import UNIFIER_EXTENSION_KEY, get_celery_app, init_unifier
from unify_app.unifier.celery_app import DEFAULT_QUEUE_NAME


def build_unifier_app(tmp_path, **config) -> Flask:
    flask_app = Flask("unifier-celery-test", instance_path=str(tmp_path / "instance"))
    flask_app.config.update(
        {
            "UNIFIER_ENABLED": True,
            "UNIFIER_SOURCES": ("ghl", "manychat", "csv"),
            "UNIFIER_WORKER_ENABLED": False,
            **config,
        }
    )
    init_unifier(flask_app)
    return flask_app


def test_sqlite_transport_defaults_to_instance_folder(tmp_path):
    flask_app = build_unifier_app(tmp_path)

    celery_app = get_celery_app(flask_app)

    assert isinstance(celery_app, Celery)
    expected = (tmp_path / "instance" / "celery.sqlite").as_posix()
    assert celery_app.conf.broker_url == f"sqla+sqlite:///{expected}"
    assert celery_app.conf.result_backend == f"db+sqlite:///{expected}"
    assert (tmp_path / "instance").is_dir()


def test_relative_sqlite_path_resolves_inside_instance(tmp_path):
    flask_app = build_unifier_app(tmp_path, CELERY_SQLITE_PATH="queues/unifier.sqlite")

    celery_app = get_celery_app(flask_app)

    expected = (tmp_path / "instance" / "queues" / "unifier.sqlite").as_posix()
    assert celery_app.conf.broker_url == f"sqla+sqlite:///{expected}"


def test_explicit_broker_urls_win(tmp_path):
    flask_app = build_unifier_app(
        tmp_path,
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
    )

    celery_app = get_celery_app(flask_app)

    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"


def test_queue_and_task_registration(tmp_path):
    celery_app = get_celery_app(build_unifier_app(tmp_path))

    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert [queue.name for queue in celery_app.conf.task_queues] == [DEFAULT_QUEUE_NAME]
    assert celery_app.conf.task_acks_late is True
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert "unifier.healthcheck" in celery_app.tasks
    assert "unifier.pipeline.run_chunk" in celery_app.tasks


def test_celery_config_accepts_json_string(tmp_path):
    flask_app = build_unifier_app(tmp_path, CELERY_CONFIG=json.dumps({"task_always_eager": True}))

    assert get_celery_app(flask_app).conf.task_always_eager is True


def test_invalid_celery_config_json_is_ignored(tmp_path):
    flask_app = build_unifier_app(tmp_path, CELERY_CONFIG="{not json")

    assert get_celery_app(flask_app).conf.task_always_eager is False


def test_disabled_unifier_has_no_celery_app(tmp_path):
    flask_app = build_unifier_app(tmp_path, UNIFIER_ENABLED=False)

    assert get_celery_app(flask_app) is None
    assert flask_app.extensions[UNIFIER_EXTENSION_KEY]["enabled"] is False
    assert "unifier" not in flask_app.blueprints


def test_healthcheck_task_runs_in_app_context(tmp_path):
    flask_app = build_unifier_app(
        tmp_path, CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True}
    )
    task = get_celery_app(flask_app).tasks["unifier.healthcheck"]

    payload = task.apply_async().get(timeout=2)

    assert payload["status"] == "ok"
    assert payload["timestamp"]
