"""test_layer.py — Unit tests for pbi_shared layer modules.

Run from shared_layer directory:
    python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import base64
import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from pbi_shared.auth import _authenticate, _extract_function_key, _normalize_api_keys
from pbi_shared.aws_clients import _get_secretsmanager
from pbi_shared.http_utils import (
    BodyTooLargeError,
    _empty,
    _error,
    _header,
    _path_method,
    _read_body,
    _response,
)


class AuthTests(unittest.TestCase):
    def test_normalize_api_keys_dedupes_csv_and_scalars(self):
        self.assertEqual(
            _normalize_api_keys("a, b,,a", "", "c", "b"),
            ("a", "b", "c"),
        )

    def test_extract_key_from_header(self):
        event = {"headers": {"X-Functions-Key": " k1 "}}
        self.assertEqual(_extract_function_key(event), "k1")

    def test_extract_key_from_query(self):
        event = {"headers": {}, "queryStringParameters": {"code": "k2"}}
        self.assertEqual(_extract_function_key(event), "k2")

    def test_extract_key_missing(self):
        self.assertIsNone(_extract_function_key({"headers": {}}))

    def test_open_when_no_keys_configured(self):
        self.assertIsNone(_authenticate({"headers": {}}, ()))

    def test_valid_key(self):
        event = {"headers": {"x-functions-key": "previous"}}
        self.assertIsNone(_authenticate(event, ("active", "previous")))

    def test_missing_key(self):
        err = _authenticate({"headers": {}}, ("active",))
        self.assertEqual(err["statusCode"], 401)

    def test_wrong_key(self):
        event = {"headers": {"x-functions-key": "guess"}}
        err = _authenticate(event, ("active",))
        self.assertEqual(err["statusCode"], 401)
        self.assertEqual(json.loads(err["body"])["error"], "Invalid function key.")

    def test_custom_error_fn(self):
        err = _authenticate(
            {"headers": {}}, ("active",), error_fn=lambda code, msg: {"code": code}
        )
        self.assertEqual(err, {"code": 401})


class HttpUtilsTests(unittest.TestCase):
    def test_response_format(self):
        resp = _response(200, {"key": "val"})
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(resp["headers"]["Content-Type"], "application/json")
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])
        self.assertEqual(json.loads(resp["body"])["key"], "val")

    def test_error_format(self):
        resp = _error(400, "bad input", field="Title")
        self.assertEqual(resp["statusCode"], 400)
        body = json.loads(resp["body"])
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "bad input")
        self.assertEqual(body["field"], "Title")

    def test_empty_response(self):
        resp = _empty(401)
        self.assertEqual(resp["statusCode"], 401)
        self.assertEqual(resp["body"], "")
        self.assertNotIn("Content-Type", resp["headers"])

    def test_read_body(self):
        self.assertEqual(_read_body({"body": '{"a": 1}'}), '{"a": 1}')

    def test_read_body_missing(self):
        self.assertEqual(_read_body({}), "")

    def test_read_body_base64(self):
        raw = base64.b64encode('{"Title": "ñ"}'.encode("utf-8")).decode()
        self.assertEqual(
            _read_body({"body": raw, "isBase64Encoded": True}), '{"Title": "ñ"}'
        )

    def test_read_body_bad_base64(self):
        with self.assertRaises(ValueError):
            _read_body({"body": "***", "isBase64Encoded": True})

    def test_read_body_invalid_utf8(self):
        raw = base64.b64encode(b"\xff\xfe").decode()
        with self.assertRaises(ValueError):
            _read_body({"body": raw, "isBase64Encoded": True})

    def test_read_body_too_large(self):
        with self.assertRaises(BodyTooLargeError) as ctx:
            _read_body({"body": "x" * 11}, max_bytes=10)
        self.assertEqual(ctx.exception.size, 11)
        self.assertEqual(ctx.exception.limit, 10)

    def test_path_method_v2(self):
        event = {
            "requestContext": {"http": {"method": "post", "path": "/api/v1/pbi"}},
        }
        self.assertEqual(_path_method(event), ("POST", "/api/v1/pbi"))

    def test_path_method_v1(self):
        event = {"httpMethod": "OPTIONS", "path": "/api/v1/pbi"}
        self.assertEqual(_path_method(event), ("OPTIONS", "/api/v1/pbi"))

    def test_header_case_insensitive(self):
        event = {"headers": {"Content-Type": "application/json"}}
        self.assertEqual(_header(event, "content-type"), "application/json")
        self.assertIsNone(_header(event, "accept"))


class AwsClientTests(unittest.TestCase):
    @patch("pbi_shared.aws_clients.boto3")
    def test_get_secretsmanager_singleton(self, mock_boto3):
        import pbi_shared.aws_clients as clients

        clients._secretsmanager = None  # Reset singleton
        mock_client = MagicMock()
        mock_boto3.client.return_value = mock_client

        result1 = _get_secretsmanager()
        result2 = _get_secretsmanager()

        # Same object returned both times.
        self.assertIs(result1, result2)
        # boto3.client called only once.
        mock_boto3.client.assert_called_once()
        self.assertEqual(mock_boto3.client.call_args[0][0], "secretsmanager")

        clients._secretsmanager = None  # Clean up


if __name__ == "__main__":
    unittest.main()
