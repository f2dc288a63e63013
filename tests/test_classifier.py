import json

import httpx
import pytest

from couponload.classifier import (
    DEFAULT_ENTRIES,
    ErrorVocabulary,
    OutcomeKind,
    classify,
    classify_response,
)
from couponload.errors import ConfigurationError

MESSAGES = {entry.kind: entry.message for entry in DEFAULT_ENTRIES}


@pytest.fixture
def vocabulary():
    return ErrorVocabulary.default()


def test_missing_response_is_network_error(vocabulary):
    result = classify_response(None, vocabulary)
    assert result.kind is OutcomeKind.NETWORK_ERROR
    assert result.status is None


def test_success(vocabulary):
    response = httpx.Response(200, json={"code": 200, "message": "OK", "result": None})
    assert classify_response(response, vocabulary).kind is OutcomeKind.SUCCESS


@pytest.mark.parametrize(
    "status, kind",
    [
        (400, OutcomeKind.DUPLICATE),
        (400, OutcomeKind.OUT_OF_STOCK),
        (500, OutcomeKind.LOCK_TIMEOUT),
    ],
)
def test_known_business_errors(vocabulary, status, kind):
    result = classify(status, {"message": MESSAGES[kind]}, vocabulary)
    assert result.kind is kind
    assert result.message == MESSAGES[kind]


def test_numeric_code_matches_without_message(vocabulary):
    result = classify(400, {"code": 1001, "message": "sold out, reworded"}, vocabulary)
    assert result.kind is OutcomeKind.OUT_OF_STOCK


def test_known_message_with_wrong_status_is_not_matched(vocabulary):
    result = classify(500, {"message": MESSAGES[OutcomeKind.DUPLICATE]}, vocabulary)
    assert result.kind is OutcomeKind.SERVER_ERROR


def test_other_5xx_is_server_error(vocabulary):
    assert classify(503, {"message": "unavailable"}, vocabulary).kind is OutcomeKind.SERVER_ERROR


def test_unparseable_body_falls_back_to_status(vocabulary):
    response = httpx.Response(502, content=b"<html>bad gateway</html>")
    result = classify_response(response, vocabulary)
    assert result.kind is OutcomeKind.SERVER_ERROR
    assert result.message == ""

    response = httpx.Response(200, content=b"not json")
    assert classify_response(response, vocabulary).kind is OutcomeKind.SUCCESS


@pytest.mark.parametrize(
    "status, body",
    [
        (400, {"message": "some new validation error"}),
        (404, {"message": "존재하지 않는 쿠폰입니다."}),
        (400, None),
        (302, {}),
    ],
)
def test_everything_else_is_unclassified(vocabulary, status, body, caplog):
    with caplog.at_level("WARNING", logger="couponload.classifier"):
        result = classify(status, body, vocabulary)
    assert result.kind is OutcomeKind.UNCLASSIFIED
    assert "unclassified" in caplog.text


def test_vocabulary_from_file(tmp_path):
    path = tmp_path / "vocabulary.json"
    path.write_text(
        json.dumps(
            {
                "entries": [
                    {"kind": "duplicate", "status": 409, "message": "already issued"},
                    {"kind": "out_of_stock", "status": 410, "code": 77},
                ]
            }
        ),
        encoding="utf-8",
    )
    vocabulary = ErrorVocabulary.from_file(path)
    assert len(vocabulary) == 2
    assert classify(409, {"message": "already issued"}, vocabulary).kind is OutcomeKind.DUPLICATE
    assert classify(410, {"code": 77}, vocabulary).kind is OutcomeKind.OUT_OF_STOCK
    # The default Korean messages are no longer known.
    assert classify(400, {"message": MESSAGES[OutcomeKind.DUPLICATE]}, vocabulary).kind is OutcomeKind.UNCLASSIFIED


@pytest.mark.parametrize(
    "records",
    [
        [{"kind": "success", "status": 200, "message": "OK"}],
        [{"kind": "duplicate", "status": 400}],
        [{"kind": "bogus", "status": 400, "message": "x"}],
        [{"status": 400, "message": "x"}],
    ],
)
def test_invalid_vocabulary_records(records):
    with pytest.raises(ConfigurationError):
        ErrorVocabulary.from_records(records)


def test_unreadable_vocabulary_file(tmp_path):
    with pytest.raises(ConfigurationError):
        ErrorVocabulary.from_file(tmp_path / "missing.json")
