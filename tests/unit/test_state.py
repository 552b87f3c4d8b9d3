"""Unit tests for pure chain state operations."""

import json
import re
from unittest.mock import patch

import pytest

from chainstate.errors import MalformedStateError
from chainstate.models import StageDocument
from chainstate.state import (
    CHAIN_ID_LENGTH,
    create_initial_state,
    generate_chain_id,
    mark_stage_complete,
    merge_states,
    parse_state,
    utc_timestamp,
    validate_state,
)

TIMESTAMP_FORMAT = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


class TestGenerateChainId:
    """Test cases for chain id generation."""

    def test_format(self):
        chain_id = generate_chain_id()

        assert len(chain_id) == CHAIN_ID_LENGTH
        assert re.fullmatch(r"[0-9a-f]{8}", chain_id)

    def test_ids_differ(self):
        ids = {generate_chain_id() for _ in range(50)}
        assert len(ids) == 50

    def test_falls_back_when_random_source_is_unavailable(self):
        """Test the clock-derived fallback still yields a hex id."""
        with patch("chainstate.state.secrets.token_hex", side_effect=NotImplementedError("no urandom")):
            chain_id = generate_chain_id()

        assert re.fullmatch(r"[0-9a-f]{8}", chain_id)


class TestUtcTimestamp:
    """Test cases for timestamp formatting."""

    def test_format(self):
        assert TIMESTAMP_FORMAT.match(utc_timestamp())


class TestParseState:
    """Test cases for parse_state."""

    def test_parses_json_text(self, sample_state):
        assert parse_state(json.dumps(sample_state)) == sample_state

    def test_parses_bytes(self, sample_state):
        assert parse_state(json.dumps(sample_state).encode("utf-8")) == sample_state

    def test_accepts_mapping_and_returns_a_copy(self, sample_state):
        sample_state["findings"] = {"files": ["a.py"]}

        parsed = parse_state(sample_state)
        parsed["findings"]["files"].append("b.py")

        assert sample_state["findings"]["files"] == ["a.py"]

    def test_accepts_stage_document(self):
        document = StageDocument(chain_id="a3f7c8d1", timestamp="2025-01-01T00:00:00Z", payload={"n": 1})

        assert parse_state(document)["n"] == 1

    @pytest.mark.parametrize("text", ["{not valid json", "", "[1, 2]", "42", "\"text\"", "null"])
    def test_rejects_non_objects(self, text):
        with pytest.raises(MalformedStateError, match="Invalid JSON format"):
            parse_state(text)

    def test_rejects_other_types(self):
        with pytest.raises(MalformedStateError, match="got list"):
            parse_state([{"chain_id": "a3f7c8d1"}])

    def test_rejects_unserializable_values(self):
        with pytest.raises(MalformedStateError, match="cannot be serialized"):
            parse_state({"chain_id": "a3f7c8d1", "timestamp": "t", "when": object()})

    def test_rejects_non_string_keys(self):
        """Test that an int key is not merged into its string twin."""
        with pytest.raises(MalformedStateError, match="key 1 is not a string"):
            parse_state({"chain_id": "a3f7c8d1", "timestamp": "t", 1: "int-key", "1": "str-key"})

    def test_rejects_nested_non_string_keys(self):
        with pytest.raises(MalformedStateError, match=r"findings\.files\.2"):
            parse_state({"chain_id": "a3f7c8d1", "timestamp": "t", "findings": {"files": {2: "x"}}})

    def test_rejects_non_string_keys_inside_lists(self):
        with pytest.raises(MalformedStateError, match=r"modules\[1\]"):
            parse_state({"chain_id": "a3f7c8d1", "timestamp": "t", "modules": [{"a": 1}, {(1, 2): "b"}]})

    def test_nested_payload_survives_unchanged(self):
        document = {
            "chain_id": "a3f7c8d1",
            "timestamp": "t",
            "findings": {"files": {"2": "x"}, "modules": [{"name": "auth", "risk": 0.4}], "empty": {}},
        }

        assert parse_state(document) == document

    def test_rejects_nan(self):
        with pytest.raises(MalformedStateError):
            parse_state({"chain_id": "a3f7c8d1", "timestamp": "t", "score": float("nan")})

    def test_rejects_invalid_utf8(self):
        with pytest.raises(MalformedStateError, match="not UTF-8"):
            parse_state(b"\xff\xfe{}")


class TestValidateState:
    """Test cases for validate_state."""

    def test_valid(self, sample_state):
        result = validate_state(sample_state)

        assert result.valid
        assert result.reason == "state has chain_id and timestamp"

    def test_only_required_fields_needed(self):
        assert validate_state({"chain_id": "a3f7c8d1", "timestamp": "2025-01-01T00:00:00Z"})

    def test_accepts_json_text(self, sample_state):
        assert validate_state(json.dumps(sample_state))

    @pytest.mark.parametrize("document, missing", [
        ({"timestamp": "2025-01-01T00:00:00Z"}, "chain_id"),
        ({"chain_id": "", "timestamp": "2025-01-01T00:00:00Z"}, "chain_id"),
        ({"chain_id": None, "timestamp": "2025-01-01T00:00:00Z"}, "chain_id"),
        ({"chain_id": "a3f7c8d1"}, "timestamp"),
        ({"chain_id": "a3f7c8d1", "timestamp": ""}, "timestamp"),
        ({}, "chain_id, timestamp"),
    ])
    def test_missing_or_empty_fields(self, document, missing):
        result = validate_state(document)

        assert not result.valid
        assert result.reason == f"missing or empty required field(s): {missing}"

    def test_non_string_fields(self):
        result = validate_state({"chain_id": 12345678, "timestamp": "2025-01-01T00:00:00Z"})

        assert not result
        assert "must be strings: chain_id" in result.reason

    def test_malformed_input_does_not_raise(self):
        result = validate_state("{not valid json")

        assert not result
        assert result.reason.startswith("Invalid JSON format")


class TestMergeStates:
    """Test cases for merge_states."""

    def test_new_values_win(self):
        old = {"chain_id": "a3f7c8d1", "stage": "bootstrap", "project_name": "billing"}
        new = {"stage": "01-setup-and-scope", "scope": "A"}

        merged = merge_states(old, new)

        assert merged == {
            "chain_id": "a3f7c8d1",
            "stage": "01-setup-and-scope",
            "project_name": "billing",
            "scope": "A",
        }

    def test_shallow_merge_replaces_nested_objects(self):
        old = {"findings": {"auth": "jwt", "db": "mysql"}}
        new = {"findings": {"db": "postgres"}}

        assert merge_states(old, new) == {"findings": {"db": "postgres"}}

    def test_deep_merge_combines_nested_objects(self):
        old = {"findings": {"auth": "jwt", "db": {"engine": "mysql", "version": 5}}}
        new = {"findings": {"db": {"engine": "postgres"}}}

        merged = merge_states(old, new, deep=True)

        assert merged == {"findings": {"auth": "jwt", "db": {"engine": "postgres", "version": 5}}}

    def test_lists_are_replaced(self):
        old = {"stages_complete": ["00-bootstrap"]}
        new = {"stages_complete": ["01-setup-and-scope"]}

        assert merge_states(old, new, deep=True)["stages_complete"] == ["01-setup-and-scope"]

    def test_explicit_null_overrides(self):
        assert merge_states({"current_stage": "02"}, {"current_stage": None}) == {"current_stage": None}

    def test_inputs_are_not_modified(self):
        old = {"findings": {"auth": "jwt"}}
        new = {"findings": {"db": "mysql"}}

        merged = merge_states(old, new, deep=True)
        merged["findings"]["extra"] = True

        assert old == {"findings": {"auth": "jwt"}}
        assert new == {"findings": {"db": "mysql"}}


class TestMarkStageComplete:
    """Test cases for mark_stage_complete."""

    def test_appends_and_refreshes_timestamp(self, sample_state):
        updated = mark_stage_complete(sample_state, "01-setup")

        assert updated["stages_complete"] == ["01-setup"]
        assert TIMESTAMP_FORMAT.match(updated["timestamp"])
        assert updated["timestamp"] > sample_state["timestamp"]

    def test_preserves_order(self, sample_state):
        state = mark_stage_complete(sample_state, "00-bootstrap")
        state = mark_stage_complete(state, "01-setup-and-scope")

        assert state["stages_complete"] == ["00-bootstrap", "01-setup-and-scope"]

    def test_duplicates_are_kept(self, sample_state):
        state = mark_stage_complete(sample_state, "01-setup")
        state = mark_stage_complete(state, "01-setup")

        assert state["stages_complete"] == ["01-setup", "01-setup"]

    def test_creates_missing_list(self):
        updated = mark_stage_complete({"chain_id": "a3f7c8d1"}, "00-bootstrap")
        assert updated["stages_complete"] == ["00-bootstrap"]

    def test_null_list_is_treated_as_empty(self):
        updated = mark_stage_complete({"chain_id": "a3f7c8d1", "stages_complete": None}, "00-bootstrap")
        assert updated["stages_complete"] == ["00-bootstrap"]

    def test_rejects_non_list_history(self):
        """Test that a malformed history is reported instead of being reset."""
        document = {"chain_id": "a3f7c8d1", "stages_complete": "00-bootstrap"}

        with pytest.raises(MalformedStateError, match="stages_complete must be a list, got str"):
            mark_stage_complete(document, "01-setup")

        assert document["stages_complete"] == "00-bootstrap"

    def test_input_is_not_modified(self, sample_state):
        mark_stage_complete(sample_state, "01-setup")

        assert sample_state["stages_complete"] == []
        assert sample_state["timestamp"] == "2025-01-01T00:00:00Z"


class TestCreateInitialState:
    """Test cases for create_initial_state."""

    def test_initial_document(self):
        state = create_initial_state("a3f7c8d1")

        assert state["chain_id"] == "a3f7c8d1"
        assert state["stage"] == "initialization"
        assert state["stages_complete"] == []
        assert state["current_stage"] is None
        assert state["start_time"] == state["timestamp"]
        assert validate_state(state)

    def test_custom_stage(self):
        assert create_initial_state("a3f7c8d1", stage="00-bootstrap")["stage"] == "00-bootstrap"
