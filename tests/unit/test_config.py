from matlab_runner.config import config
from matlab_runner.core_config import get_cfg_defaults


def test_defaults_match_editor_expectations():
    cfg = get_cfg_defaults()
    assert cfg.SERVER.PORT == 3001
    assert cfg.RUN.TERMINATE_GRACE_SEC == 2.0
    assert cfg.RUN.SUCCESS_EXIT_CODE == 0
    assert cfg.RUN.PROGRESS_TAIL_CHARS == 800
    assert cfg.RUN.CONCURRENT_START_POLICY == "preempt"
    assert cfg.RESULTS.OUTPUT_SUBDIR == "output"
    assert cfg.RESULTS.EXTRACTION_TIMEOUT_SEC == 600.0


def test_global_config_is_frozen():
    assert config.is_frozen()


def test_defaults_are_independent_clones():
    first = get_cfg_defaults()
    second = get_cfg_defaults()
    first.RUN.TERMINATE_GRACE_SEC = 9.0
    assert second.RUN.TERMINATE_GRACE_SEC != 9.0


def test_override_fixture_restores_values(override_config):
    original = config.RUN.ARTIFACT_POLL_INTERVAL_SEC
    override_config("RUN.ARTIFACT_POLL_INTERVAL_SEC", 0.25)
    assert config.RUN.ARTIFACT_POLL_INTERVAL_SEC == 0.25
    assert config.is_frozen()
    assert original != 0.25
