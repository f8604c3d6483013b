"""
Tests for log formatting and root logger configuration.
"""

import io
import json
import logging
import sys

import pytest

from project_annotator.logging_setup import JsonFormatter, TextFormatter, parse_level, setup_logging


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(msg='Adding project annotation to namespace', context=None, level=logging.INFO):
    record = logging.LogRecord('project_annotator.mutation', level, __file__, 1, msg, (), None)
    if context is not None:
        record.context = context
    return record


class TestJsonFormatter:
    """Test JSON log lines."""

    def test_basic_fields(self):
        line = json.loads(JsonFormatter().format(make_record()))

        assert line['level'] == 'INFO'
        assert line['logger'] == 'project_annotator.mutation'
        assert line['msg'] == 'Adding project annotation to namespace'
        assert 'time' in line

    def test_context_fields_merged(self):
        record = make_record(context={'namespace': 'team-a', 'cluster_id': 'c-m-abc123'})

        line = json.loads(JsonFormatter().format(record))

        assert line['namespace'] == 'team-a'
        assert line['cluster_id'] == 'c-m-abc123'

    def test_context_cannot_override_core_fields(self):
        record = make_record(context={'msg': 'spoofed', 'level': 'DEBUG'})

        line = json.loads(JsonFormatter().format(record))

        assert line['msg'] == 'Adding project annotation to namespace'
        assert line['level'] == 'INFO'

    def test_non_serializable_values(self):
        record = make_record(context={'ttl': object()})

        line = json.loads(JsonFormatter().format(record))

        assert isinstance(line['ttl'], str)

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord('x', logging.ERROR, __file__, 1, 'failed', (), sys.exc_info())

        line = json.loads(JsonFormatter().format(record))

        assert 'RuntimeError: boom' in line['exception']


class TestTextFormatter:
    """Test text log lines."""

    def test_context_appended(self):
        record = make_record(context={'namespace': 'team-a', 'project': 'platform'})

        line = TextFormatter().format(record)

        assert line.endswith('namespace=team-a project=platform')
        assert ' - INFO - Adding project annotation to namespace' in line

    def test_without_context(self):
        line = TextFormatter().format(make_record())

        assert line.endswith('Adding project annotation to namespace')


class TestSetupLogging:
    """Test root logger configuration."""

    @pytest.mark.parametrize('name,level', [
        ('debug', logging.DEBUG),
        ('info', logging.INFO),
        ('warn', logging.WARNING),
        ('WARNING', logging.WARNING),
        ('error', logging.ERROR),
    ])
    def test_parse_level(self, name, level):
        assert parse_level(name) == level

    def test_parse_unknown_level(self):
        with pytest.raises(ValueError, match="unknown log level"):
            parse_level('trace')

    def test_json_output(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging('debug', 'json', stream=stream)

        logging.getLogger('project_annotator.test').debug(
            "Cluster ID cache hit", extra={'context': {'cluster': 'prod'}}
        )

        line = json.loads(stream.getvalue().strip())
        assert line['msg'] == 'Cluster ID cache hit'
        assert line['cluster'] == 'prod'

    def test_text_output_and_level(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging('warn', 'text', stream=stream)

        logging.getLogger('project_annotator.test').info("hidden")
        logging.getLogger('project_annotator.test').warning("shown")

        output = stream.getvalue()
        assert 'hidden' not in output
        assert 'WARNING - shown' in output

    def test_replaces_existing_handlers(self, restore_root_logger):
        setup_logging('info', 'json', stream=io.StringIO())
        root = setup_logging('info', 'json', stream=io.StringIO())

        assert len(root.handlers) == 1
