import pytest

from gateway.config import Config
from gateway.decision import AccessPolicy, DecisionEngine
from gateway.rules import build_reject_paths, build_rules


@pytest.fixture
def make_engine():
    def _make(accept="", deny="", paths=""):
        policy = AccessPolicy(
            accept_rules=build_rules(accept),
            deny_rules=build_rules(deny),
            reject_paths=build_reject_paths(paths),
        )
        return DecisionEngine(policy)

    return _make


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> Config:
        values = dict(
            listen_host="127.0.0.1",
            listen_port=0,
            accept_source_ips="",
            deny_source_ips="",
            deny_url_paths="",
            log_path=str(tmp_path / "gateway.log"),
            upstream_timeout=5.0,
        )
        values.update(overrides)
        return Config(**values)

    return _make
