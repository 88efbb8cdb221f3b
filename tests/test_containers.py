"""Tests for the Docker container collector."""

import pytest

from sentinel.containers import ContainerCollector, container_cpu_percent, container_memory_usage
from sentinel.errors import SourceUnavailable
from sentinel.sources import SourceFamily


def _stats(total, pre_total, system, pre_system, online_cpus=4, usage=0, limit=0, cache=None, pids=0):
    memory = {"usage": usage, "limit": limit, "stats": {}}
    if cache is not None:
        memory["stats"]["inactive_file"] = cache
    return {
        "cpu_stats": {"cpu_usage": {"total_usage": total}, "system_cpu_usage": system, "online_cpus": online_cpus},
        "precpu_stats": {"cpu_usage": {"total_usage": pre_total}, "system_cpu_usage": pre_system},
        "memory_stats": memory,
        "pids_stats": {"current": pids},
    }


class TestStatsMath:
    """Tests for docker-stats style CPU and memory figures."""

    def test_cpu_percent(self):
        stats = _stats(total=200, pre_total=100, system=2000, pre_system=1000, online_cpus=4)
        assert container_cpu_percent(stats) == pytest.approx(40.0)

    def test_cpu_percent_falls_back_to_percpu_count(self):
        stats = _stats(total=200, pre_total=100, system=2000, pre_system=1000, online_cpus=0)
        stats["cpu_stats"]["cpu_usage"]["percpu_usage"] = [1, 1]
        assert container_cpu_percent(stats) == pytest.approx(20.0)

    def test_cpu_percent_without_previous_sample(self):
        assert container_cpu_percent(_stats(total=100, pre_total=100, system=0, pre_system=0)) == 0.0
        assert container_cpu_percent({}) == 0.0

    def test_memory_subtracts_page_cache(self):
        usage, limit = container_memory_usage(_stats(0, 0, 0, 0, usage=500, limit=1000, cache=100))
        assert (usage, limit) == (400, 1000)

    def test_memory_cgroup_v1_cache(self):
        stats = {"memory_stats": {"usage": 800, "limit": 2000, "stats": {"cache": 300}}}
        assert container_memory_usage(stats) == (500, 2000)

    def test_memory_missing(self):
        assert container_memory_usage({}) == (0, 0)


class TestContainerCollector:
    """Tests for polling with a faked Engine API."""

    def _collector(self, monkeypatch, clock, responses):
        collector = ContainerCollector(socket_path="/nonexistent/docker.sock", clock=clock)

        def fake_get_json(path):
            outcome = responses[path]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        monkeypatch.setattr(collector, "_get_json", fake_get_json)
        return collector

    def test_poll(self, monkeypatch, clock):
        listing = [
            {"Id": "abcdef1234567890", "Names": ["/web"], "Image": "nginx:latest", "State": "running"},
            {"Id": "0123456789abcdef", "Names": [], "Image": "redis", "State": "running"},
        ]
        responses = {
            "/containers/json": listing,
            "/containers/abcdef1234567890/stats?stream=false&one-shot=true": _stats(
                200, 100, 2000, 1000, online_cpus=2, usage=300, limit=1000, pids=7
            ),
            "/containers/0123456789abcdef/stats?stream=false&one-shot=true": SourceUnavailable("gone"),
        }
        collector = self._collector(monkeypatch, clock, responses)

        result = collector.poll()

        assert collector.family is SourceFamily.CONTAINERS
        assert result.is_fresh
        assert result.as_of == clock.now
        web, redis = result.data
        assert (web.id, web.name, web.image) == ("abcdef123456", "web", "nginx:latest")
        assert web.cpu_percent == pytest.approx(20.0)
        assert web.memory_percent == pytest.approx(30.0)
        assert web.pids == 7
        assert redis.name == "0123456789ab"
        assert redis.cpu_percent == 0.0

    def test_listing_failure_raises(self, monkeypatch, clock):
        collector = self._collector(monkeypatch, clock, {"/containers/json": SourceUnavailable("refused")})
        with pytest.raises(SourceUnavailable):
            collector.poll()

    def test_unexpected_listing(self, monkeypatch, clock):
        collector = self._collector(monkeypatch, clock, {"/containers/json": {"message": "error"}})
        with pytest.raises(SourceUnavailable, match="unexpected"):
            collector.poll()

    def test_one_shot_cpu_delta_spans_polls(self, monkeypatch, clock):
        """One-shot stats carry no precpu sample; the previous poll stands in for it."""
        listing = [{"Id": "abcdef1234567890", "Names": ["/web"], "Image": "nginx", "State": "running"}]
        payloads = iter([
            _stats(total=100, pre_total=0, system=1000, pre_system=0, online_cpus=2),
            _stats(total=300, pre_total=0, system=3000, pre_system=0, online_cpus=2),
        ])
        requested = []
        collector = ContainerCollector(socket_path="/nonexistent/docker.sock", clock=clock)

        def fake_get_json(path):
            requested.append(path)
            return listing if path == "/containers/json" else next(payloads)

        monkeypatch.setattr(collector, "_get_json", fake_get_json)

        (first,) = collector.poll().data
        (second,) = collector.poll().data

        assert "/containers/abcdef1234567890/stats?stream=false&one-shot=true" in requested
        assert first.cpu_percent == 0.0
        assert second.cpu_percent == pytest.approx(20.0)

    def test_missing_socket_is_unavailable(self, tmp_path):
        assert not ContainerCollector(socket_path=str(tmp_path / "docker.sock")).is_available()

    def test_existing_socket_path_is_available(self, tmp_path):
        path = tmp_path / "docker.sock"
        path.touch()
        assert ContainerCollector(socket_path=str(path)).is_available()

    def test_unreachable_socket(self, tmp_path):
        collector = ContainerCollector(socket_path=str(tmp_path / "docker.sock"), timeout=0.5)
        with pytest.raises(SourceUnavailable, match="failed"):
            collector.poll()
