"""
Unit tests for the gunicorn scheduler ownership hooks (docker/gunicorn_conf.py).

The arbiter and workers are stand-ins carrying only the attributes the
hooks read.
"""

import importlib.util
import os
from pathlib import Path
from types import SimpleNamespace

import pytest


CONF_PATH = Path(__file__).resolve().parents[2] / 'docker' / 'gunicorn_conf.py'


@pytest.fixture
def conf(monkeypatch):
    monkeypatch.setenv('SCHEDULER_WORKER', 'unset')
    spec = importlib.util.spec_from_file_location('finvault_gunicorn_conf', CONF_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def arbiter():
    return SimpleNamespace(WORKERS={}, num_workers=2)


def spawn(conf, server, age):
    """Run the fork hooks the way the arbiter does and register the worker."""
    worker = SimpleNamespace(age=age, pid=1000 + age)
    conf.pre_fork(server, worker)
    conf.post_fork(server, worker)
    server.WORKERS[worker.pid] = worker
    return worker, os.environ['SCHEDULER_WORKER']


def reap(conf, server, worker):
    server.WORKERS.pop(worker.pid)
    conf.child_exit(server, worker)


class TestSchedulerOwnership:

    def test_first_worker_owns_scheduler(self, conf, arbiter):
        _, first = spawn(conf, arbiter, 1)
        _, second = spawn(conf, arbiter, 2)

        assert first == 'true'
        assert second == 'false'
        assert arbiter.scheduler_owner_age == 1

    def test_respawned_owner_hands_over(self, conf, arbiter):
        """Test a replacement for a dead owner picks up the scheduler."""
        owner, _ = spawn(conf, arbiter, 1)
        spawn(conf, arbiter, 2)

        reap(conf, arbiter, owner)
        _, replacement = spawn(conf, arbiter, 3)

        assert replacement == 'true'
        assert arbiter.scheduler_owner_age == 3

    def test_respawned_standard_worker_stays_standard(self, conf, arbiter):
        spawn(conf, arbiter, 1)
        other, _ = spawn(conf, arbiter, 2)

        reap(conf, arbiter, other)
        _, replacement = spawn(conf, arbiter, 3)

        assert replacement == 'false'
        assert arbiter.scheduler_owner_age == 1

    def test_owner_killed_without_exit_hook(self, conf, arbiter):
        """Test ownership is recovered from the live worker set alone."""
        owner, _ = spawn(conf, arbiter, 1)
        spawn(conf, arbiter, 2)

        arbiter.WORKERS.pop(owner.pid)
        _, replacement = spawn(conf, arbiter, 3)

        assert replacement == 'true'

    def test_graceful_reload_moves_owner_to_new_generation(self, conf, arbiter):
        """Test the first worker of a reload wave takes over from the retiring owner."""
        old_owner, _ = spawn(conf, arbiter, 1)
        old_other, _ = spawn(conf, arbiter, 2)

        _, first_new = spawn(conf, arbiter, 3)
        _, second_new = spawn(conf, arbiter, 4)
        reap(conf, arbiter, old_owner)
        reap(conf, arbiter, old_other)

        assert first_new == 'true'
        assert second_new == 'false'
        assert arbiter.scheduler_owner_age == 3
