"""Protocol clients used by tests to drive homeservers."""

from fedharness.client.csapi import ClientServerAPI
from fedharness.client.json_utils import (
    get_json_field_str,
    get_json_path,
    json_path_escape,
    parse_json,
)
from fedharness.client.logged import new_logged_client

__all__ = [
    "ClientServerAPI",
    "get_json_field_str",
    "get_json_path",
    "json_path_escape",
    "new_logged_client",
    "parse_json",
]
