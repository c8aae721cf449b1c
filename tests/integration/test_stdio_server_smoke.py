from __future__ import annotations

import io
import json
from pathlib import Path

from realm_index.config import CliOverrides
from realm_index.server import create_server


def test_stdio_server_routes_multiple_requests(pet_realm: Path) -> None:
    server = create_server(realm_root=str(pet_realm))
    in_stream = io.StringIO(
        "\n".join(
            [
                json.dumps({"id": "req-1", "method": "realm.run", "params": {}}),
                json.dumps(
                    {
                        "id": "req-2",
                        "method": "tools/call",
                        "params": {"name": "realm.search", "arguments": {}},
                    }
                ),
                "not json",
            ]
        )
        + "\n"
    )
    out_stream = io.StringIO()

    server.serve(in_stream=in_stream, out_stream=out_stream)
    lines = [line for line in out_stream.getvalue().splitlines() if line]

    assert len(lines) == 3
    first, second, third = (json.loads(line) for line in lines)

    assert first["request_id"] == "req-1"
    assert first["ok"] is True
    assert first["result"]["instance_count"] == 3

    assert second["request_id"] == "req-2"
    assert second["ok"] is True
    assert len(second["result"]["data"]) == 3

    assert third["ok"] is False
    assert third["error"]["code"] == "INVALID_JSON"


def test_realm_tools_return_stable_envelopes(pet_realm: Path) -> None:
    server = create_server(realm_root=str(pet_realm))
    realm_url = "http://localhost/realm/"
    pet = {"module": f"{realm_url}pet", "name": "Pet"}
    try:
        server.handle_payload({"id": "run", "method": "realm.run", "params": {}})
        card = server.handle_payload(
            {"id": "card", "method": "realm.card", "params": {"url": "pets/mango"}}
        )
        missing = server.handle_payload(
            {"id": "missing", "method": "realm.card", "params": {"url": "pets/nobody"}}
        )
        type_of = server.handle_payload(
            {
                "id": "type",
                "method": "realm.type_of",
                "params": {"ref": {"module": "./dog", "name": "Dog"}},
            }
        )
        listing = server.handle_payload(
            {"id": "dir", "method": "realm.directory", "params": {"url": "pets/"}}
        )
        ignored = server.handle_payload(
            {"id": "ign", "method": "realm.is_ignored", "params": {"url": "node_modules/"}}
        )
        bad_filter = server.handle_payload(
            {
                "id": "bad",
                "method": "realm.search",
                "params": {"query": {"filter": {"on": pet, "eq": {"color": "red"}}}},
            }
        )
        unknown = server.handle_payload({"id": "unknown", "method": "realm.nope", "params": {}})
        bad_params = server.handle_payload(
            {"id": "params", "method": "realm.update", "params": {"url": ""}}
        )
    finally:
        server.close()

    assert card["ok"] is True
    assert card["result"]["type"] == "doc"
    assert card["result"]["doc"]["data"]["id"] == f"{realm_url}pets/mango"
    assert missing["result"] == {"type": "not-found", "url": f"{realm_url}pets/nobody"}
    assert type_of["result"]["definition"]["super"] == {
        "type": "exportedCard",
        "module": f"{realm_url}pet",
        "name": "Pet",
    }
    assert [entry["name"] for entry in listing["result"]["entries"]] == [
        "mango.json",
        "vangogh.json",
    ]
    assert ignored["result"]["ignored"] is True
    assert bad_filter["ok"] is False
    assert bad_filter["error"]["code"] == "INVALID_FILTER"
    assert unknown["error"]["code"] == "UNKNOWN_TOOL"
    assert bad_params["error"]["code"] == "INVALID_PARAMS"


def test_update_tool_reports_invalidations(pet_realm: Path) -> None:
    server = create_server(realm_root=str(pet_realm))
    realm_url = "http://localhost/realm/"
    try:
        server.handle_payload({"id": "run", "method": "realm.run", "params": {}})
        (pet_realm / "people" / "hassan.json").unlink()
        response = server.handle_payload(
            {
                "id": "upd",
                "method": "realm.update",
                "params": {"url": "people/hassan.json", "delete": True},
            }
        )
    finally:
        server.close()

    assert response["ok"] is True
    assert response["result"]["invalidations"] == [
        f"{realm_url}people/hassan.json",
        f"{realm_url}pets/mango.json",
    ]
    assert response["result"]["stats"]["instancesIndexed"] == 2


def test_search_hits_are_truncated_with_a_warning(pet_realm: Path) -> None:
    (pet_realm / "realm_index.toml").write_text(
        "[limits]\nmax_search_hits = 2\n", encoding="utf-8"
    )
    server = create_server(realm_root=str(pet_realm))
    try:
        server.handle_payload({"id": "run", "method": "realm.run", "params": {}})
        response = server.handle_payload({"id": "s", "method": "realm.search", "params": {}})
    finally:
        server.close()

    assert response["ok"] is True
    assert len(response["result"]["data"]) == 2
    assert len(response["warnings"]) == 1
    assert "__warnings__" not in response["result"]


def test_oversized_responses_are_blocked(pet_realm: Path) -> None:
    (pet_realm / "realm_index.toml").write_text(
        "[limits]\nmax_total_bytes_per_response = 300\n", encoding="utf-8"
    )
    server = create_server(realm_root=str(pet_realm))
    try:
        server.handle_payload({"id": "run", "method": "realm.run", "params": {}})
        response = server.handle_payload({"id": "s", "method": "realm.search", "params": {}})
    finally:
        server.close()

    assert response["ok"] is False
    assert response["blocked"] is True
    assert response["result"]["reason"] == "Response exceeds max_total_bytes_per_response limit."
    assert response["error"]["code"] == "RESPONSE_TOO_LARGE"


def test_status_reports_effective_config_and_audit_log(pet_realm: Path, tmp_path: Path) -> None:
    data_dir = tmp_path / "server-data"
    server = create_server(
        realm_root=str(pet_realm),
        cli_overrides=CliOverrides(data_dir=data_dir, runner_mode="queue"),
    )
    try:
        status = server.handle_payload({"id": "st", "method": "realm.status", "params": {}})
        server.handle_payload({"id": "run", "method": "realm.run", "params": {}})
        audit = server.handle_payload(
            {"id": "log", "method": "realm.audit_log", "params": {"limit": 10}}
        )
    finally:
        server.close()

    effective = status["result"]["effective_config"]
    assert effective["data_dir"] == str(data_dir.resolve())
    assert effective["runner"] == {"mode": "queue"}
    assert status["result"]["phase"] == "idle"
    tools = [entry["tool"] for entry in audit["result"]["entries"]]
    assert tools == ["realm.status", "realm.run"]
    assert (data_dir / "audit.jsonl").exists()
    assert (data_dir / "index_events.jsonl").exists()
