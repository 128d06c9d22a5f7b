"""
Tests for shared helpers and model validation.
"""

from datetime import timedelta

import pytest

from bulkexport.jobs.job_types import OperationOutcome, OutcomeDetail, WorkUnit, ResourceType
from bulkexport.jobs.utils import chunk_list, format_duration, parse_timestamp
from bulkexport.models import is_supported_organization


class TestChunkList:
    def test_even_split(self):
        assert chunk_list([1, 2, 3, 4], 2) == [[1, 2], [3, 4]]

    def test_short_last_chunk(self):
        assert chunk_list(list(range(5)), 2) == [[0, 1], [2, 3], [4]]

    def test_empty_list(self):
        assert chunk_list([], 3) == []

    def test_non_positive_size_raises(self):
        with pytest.raises(ValueError):
            chunk_list([1], 0)


class TestParseTimestamp:
    def test_offset(self):
        parsed = parse_timestamp("2020-02-13T08:00:00.000-05:00")
        assert parsed.utcoffset() == timedelta(hours=-5)

    def test_zulu(self):
        assert parse_timestamp("2020-02-13T13:00:00Z").utcoffset() == timedelta(0)

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


def test_format_duration():
    assert format_duration(12.34) == "12.3s"
    assert format_duration(90) == "1.5m"
    assert format_duration(5400) == "1.5h"


@pytest.mark.parametrize("org_id,supported", [
    ("A0001", True),
    ("V001", True),
    ("E1234", True),
    ("A001", False),
    ("V0001", False),
    ("X0001", False),
    ("", False),
    ("A00011", False),
])
def test_supported_organizations(org_id, supported):
    assert is_supported_organization(org_id) is supported


def test_operation_outcome_line_uses_wire_names():
    line = OperationOutcome(detail_code=OutcomeDetail.RETRIEVAL_ERROR, detail_message="nope").to_line()

    assert line == '{"severity":"error","code":"exception","detailCode":"RetrievalError","detailMessage":"nope"}'


def test_work_unit_payload():
    unit = WorkUnit(job_id="j", organization_id="A0001", resource_type=ResourceType.COVERAGE,
                    since="gt2020-01-01T00:00:00Z", member_ids=["a", "b"], priority=20)

    assert WorkUnit.from_payload(unit.to_payload()) == unit
