# tests/test_logging_utils.py

import logging

import pytest

from scatlas.logging_utils import init_logging


@pytest.fixture
def clean_root_logger():
    orig_handlers = logging.root.handlers[:]
    orig_level = logging.root.level
    yield
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
        h.close()
    for h in orig_handlers:
        logging.root.addHandler(h)
    logging.root.setLevel(orig_level)


def test_stream_handler_only(clean_root_logger):
    init_logging(None)
    assert [type(h) for h in logging.root.handlers] == [logging.StreamHandler]


def test_file_handler_writes_to_nested_path(tmp_path, clean_root_logger):
    log_path = tmp_path / "run" / "logs" / "find-doublets.log"
    init_logging(log_path)

    logging.getLogger("scatlas.find_doublets").info("doublet detection on 3 samples")
    for h in logging.root.handlers:
        h.flush()

    assert [type(h) for h in logging.root.handlers] == [logging.StreamHandler, logging.FileHandler]
    txt = log_path.read_text()
    assert "[INFO] doublet detection on 3 samples" in txt


def test_repeated_init_replaces_handlers(tmp_path, clean_root_logger):
    init_logging(tmp_path / "a.log")
    init_logging(tmp_path / "b.log")
    files = [h for h in logging.root.handlers if isinstance(h, logging.FileHandler)]
    assert len(files) == 1
    assert files[0].baseFilename.endswith("b.log")


def test_level_filters_messages(tmp_path, clean_root_logger):
    log_path = tmp_path / "x.log"
    init_logging(log_path, level=logging.WARNING)
    log = logging.getLogger("scatlas.qc")
    log.info("kept quiet")
    log.warning("dropping sample S3")
    for h in logging.root.handlers:
        h.flush()

    txt = log_path.read_text()
    assert "dropping sample S3" in txt
    assert "kept quiet" not in txt


def test_noisy_libraries_are_raised_to_warning(clean_root_logger):
    init_logging(None, level=logging.DEBUG)
    assert logging.getLogger("numba").level == logging.WARNING
    assert logging.getLogger("matplotlib").level == logging.WARNING
