import io
import re

from wgtunnel.logger import LogLevel, Logger, discard_logf, new_logger

STAMP = r"\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}"


def test_verbose_level_writes_both():
    out = io.StringIO()
    logger = new_logger(LogLevel.VERBOSE, "dev0: ", stream=out)
    logger.verbosef("hello %d", 5)
    logger.errorf("bad %s", "thing")
    lines = out.getvalue().splitlines(keepends=True)
    assert len(lines) == 2
    assert re.fullmatch(rf"DEBUG: dev0: {STAMP} hello 5\n", lines[0])
    assert re.fullmatch(rf"ERROR: dev0: {STAMP} bad thing\n", lines[1])


def test_error_level_drops_verbose():
    out = io.StringIO()
    logger = new_logger(LogLevel.ERROR, "", stream=out)
    logger.verbosef("quiet")
    logger.errorf("loud")
    text = out.getvalue()
    assert text.count("\n") == 1
    assert "quiet" not in text
    assert text.startswith("ERROR: ")
    assert text.endswith(" loud\n")


def test_silent_level_writes_nothing():
    out = io.StringIO()
    logger = new_logger(LogLevel.SILENT, "x", stream=out)
    logger.verbosef("a")
    logger.errorf("b")
    assert out.getvalue() == ""


def test_existing_newline_not_doubled():
    out = io.StringIO()
    new_logger(LogLevel.VERBOSE, "", stream=out).verbosef("line\n")
    assert out.getvalue().endswith(" line\n")
    assert not out.getvalue().endswith("\n\n")


def test_default_stream_is_stdout(capsys):
    new_logger(LogLevel.ERROR, "p: ").errorf("to stdout")
    text = capsys.readouterr().out
    assert text.startswith("ERROR: p: ")
    assert text.endswith(" to stdout\n")
    assert text.count("\n") == 1


def test_custom_logger_functions():
    seen = []
    logger = Logger(verbose=lambda fmt, *a: seen.append(("v", fmt, a)))
    logger.verbosef("x %s", 1)
    logger.errorf("dropped")
    assert seen == [("v", "x %s", (1,))]


def test_discard_logf_writes_nothing(capsys):
    discard_logf("nothing %s", "here")
    Logger().verbosef("also nothing")
    assert capsys.readouterr().out == ""