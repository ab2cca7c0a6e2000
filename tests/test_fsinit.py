import logging
from pathlib import Path

from sitedigest.fsinit import prepare_runtime, runtime_dirs


def test_prepare_runtime_creates_dirs(config, monkeypatch, tmp_path):
    monkeypatch.setenv("SD_LOG_FILE", str(tmp_path / "logs" / "worker.log"))
    monkeypatch.setenv("SD_UMASK", "022")
    assert prepare_runtime(config, logging.getLogger("sitedigest.tests")) == []
    for path in runtime_dirs(config.paths.data_dir, config.paths.object_store_dir):
        assert Path(path).is_dir()
    assert (tmp_path / "logs").is_dir()


def test_runtime_dirs_skip_log_dir_without_log_file(monkeypatch):
    monkeypatch.delenv("SD_LOG_FILE", raising=False)
    assert runtime_dirs("/data", "/data/objects") == ["/data", "/data/objects", "/data/objects/domains"]
