import json
import logging
import sys
import uuid

from kahani.logging_config import JSONFormatter, get_logger, trial_logger


def make_record(msg="Decision applied", context=None, exc_info=None):
    record = logging.LogRecord("kahani.conversation", logging.INFO, __file__, 1, msg, None, exc_info)
    if context is not None:
        record.context = context
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "kahani.conversation"
        assert data["message"] == "Decision applied"
        assert "context" not in data

    def test_context_is_serialized(self):
        trial_id = uuid.uuid4()

        data = json.loads(JSONFormatter().format(make_record(context={"trial_id": trial_id, "outcome": "ready"})))

        assert data["context"] == {"trial_id": str(trial_id), "outcome": "ready"}

    def test_exception_is_included(self):
        try:
            raise ValueError("bad media id")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad media id" in data["exception"]


class TestTrialLogger:
    def test_namespace(self):
        assert get_logger("scheduler").name == "kahani.scheduler"

    def test_merges_trial_context(self):
        trial_id = uuid.uuid4()
        log = trial_logger(get_logger("conversation"), trial_id, event="MessageReceived")

        msg, kwargs = log.process("Decision applied", {"extra": {"context": {"outcome": "ready"}}})

        assert msg == "Decision applied"
        assert kwargs["extra"]["context"] == {
            "trial_id": str(trial_id),
            "event": "MessageReceived",
            "outcome": "ready",
        }
