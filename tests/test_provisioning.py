"""Tests for repository checkout and kind cluster provisioning."""

import subprocess
from dataclasses import replace
from pathlib import Path

import pytest

from chaosgate.errors import FatalSetupError, Stage
from chaosgate.provisioner import KindCluster, clone_repository
from chaosgate.provisioner.cluster import DOCKER_PERMISSION_HELP
from chaosgate.provisioner.repository import checkout_path


class TestCheckoutPath:
    def test_millisecond_suffix(self, settings, tmp_path):
        settings = replace(settings, workdir=str(tmp_path))

        assert checkout_path(settings, now=1705320000.5) == tmp_path / "chaos-test-1705320000500"


class TestCloneRepository:
    """Tests for shallow cloning."""

    def test_shallow_clone(self, settings, tmp_path, monkeypatch):
        calls = []

        def run(cmd, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, "", "")

        monkeypatch.setattr("chaosgate.provisioner.repository.subprocess.run", run)
        settings = replace(settings, workdir=str(tmp_path))

        dest = clone_repository("https://github.com/org/shop", settings)

        assert calls[0][:5] == ["git", "clone", "--depth", "1", "--"]
        assert calls[0][5] == "https://github.com/org/shop"
        assert Path(calls[0][6]) == dest
        assert dest.parent == tmp_path

    def test_clone_failure(self, settings, tmp_path, monkeypatch):
        def run(cmd, **kwargs):
            raise subprocess.CalledProcessError(128, cmd, stderr="fatal: repository not found\n")

        monkeypatch.setattr("chaosgate.provisioner.repository.subprocess.run", run)

        with pytest.raises(FatalSetupError, match="Failed to clone repository") as exc:
            clone_repository("https://github.com/org/missing", replace(settings, workdir=str(tmp_path)))

        assert exc.value.stage == Stage.REPOSITORY_CLONING
        assert exc.value.details == "fatal: repository not found"

    def test_git_missing(self, settings, tmp_path, monkeypatch):
        def run(cmd, **kwargs):
            raise FileNotFoundError("git")

        monkeypatch.setattr("chaosgate.provisioner.repository.subprocess.run", run)

        with pytest.raises(FatalSetupError, match="git not found"):
            clone_repository("https://github.com/org/shop", replace(settings, workdir=str(tmp_path)))


class TestKindCluster:
    """Tests for kind cluster provisioning."""

    def _patch(self, monkeypatch, clusters="", fail_create=None):
        calls = []

        def run(cmd, **kwargs):
            calls.append(cmd)
            if cmd[1:3] == ["create", "cluster"] and fail_create:
                raise subprocess.CalledProcessError(1, cmd, stderr=fail_create)
            return subprocess.CompletedProcess(cmd, 0, clusters, "")

        monkeypatch.setattr("chaosgate.provisioner.cluster.subprocess.run", run)
        return calls

    def test_existing_cluster(self, settings, monkeypatch):
        calls = self._patch(monkeypatch, clusters="chaos-test\nother\n")

        assert KindCluster(settings).ensure() is False
        assert calls == [["kind", "get", "clusters"]]

    def test_creates_cluster(self, settings, monkeypatch):
        calls = self._patch(monkeypatch, clusters="other\n")

        assert KindCluster(settings).ensure() is True
        assert calls[-1] == ["kind", "create", "cluster", "--name", "chaos-test"]

    def test_docker_permission_denied(self, settings, monkeypatch):
        self._patch(
            monkeypatch,
            fail_create="Got permission denied while trying to connect to unix:///var/run/docker.sock",
        )

        with pytest.raises(FatalSetupError) as exc:
            KindCluster(settings).ensure()

        assert exc.value.stage == Stage.CLUSTER_SETUP
        assert exc.value.details == DOCKER_PERMISSION_HELP

    def test_other_failure(self, settings, monkeypatch):
        self._patch(monkeypatch, fail_create="node image not found")

        with pytest.raises(FatalSetupError, match="Failed to setup Kubernetes cluster: node image not found"):
            KindCluster(settings).ensure()
