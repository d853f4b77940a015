"""Tests for bindctl, the command-line client."""

import json
from unittest.mock import MagicMock, patch

import click
import pytest
import requests
from click.testing import CliRunner

from bindctl import (
    BindInfoOperatorCLI,
    cli,
    load_manifests,
    resolve_plural,
    summarize,
)

BINDINFO = {
    "kind": "BindInfo",
    "metadata": {"name": "postgres-bindinfo", "namespace": "operand-ns"},
    "spec": {"operand": "postgres", "registry": "common-service", "registryNamespace": ""},
    "status": {"phase": "Completed", "requestNamespaces": ["consumer-a"]},
}

BINDINFO_YAML = """\
apiVersion: operator.ibm.com/v1alpha1
kind: BindInfo
metadata:
  name: postgres-bindinfo
  namespace: operand-ns
spec:
  operand: postgres
  registry: common-service
---
kind: ConfigMap
metadata:
  name: postgres-cm
data:
  host: postgres.operand-ns.svc
"""


def api_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Error", response=response
        )
    return response


@pytest.fixture
def runner():
    return CliRunner()


class TestHelpers:
    @pytest.mark.parametrize(
        "resource,expected",
        [
            ("bindinfos", "bindinfos"),
            ("BindInfo", "bindinfos"),
            ("bi", "bindinfos"),
            ("cm", "configmaps"),
            ("registry", "registries"),
        ],
    )
    def test_resolve_plural(self, resource, expected):
        assert resolve_plural(resource) == expected

    def test_resolve_plural_unknown(self):
        with pytest.raises(click.BadParameter):
            resolve_plural("pods")

    def test_load_yaml_documents(self, tmp_path):
        path = tmp_path / "manifests.yaml"
        path.write_text(BINDINFO_YAML)

        docs = load_manifests(str(path))

        assert [d["kind"] for d in docs] == ["BindInfo", "ConfigMap"]

    def test_load_json_list(self, tmp_path):
        path = tmp_path / "manifests.json"
        path.write_text(json.dumps([BINDINFO]))

        assert load_manifests(str(path)) == [BINDINFO]

    def test_summarize_bindinfo(self):
        row = summarize("bindinfos", BINDINFO)

        assert row == ["operand-ns", "postgres-bindinfo", "postgres", "/common-service", "Completed", ""]

    def test_summarize_shows_controller(self):
        copy = {
            "kind": "Secret",
            "metadata": {
                "name": "my-secret",
                "namespace": "consumer-a",
                "ownerReferences": [
                    {"kind": "BindInfo", "name": "postgres-bindinfo", "controller": True}
                ],
            },
            "type": "Opaque",
            "data": {"password": "cGFzc3dvcmQ="},
        }

        assert summarize("secrets", copy)[-1] == "BindInfo/postgres-bindinfo"

    def test_make_request_reports_errors(self, capsys):
        client = BindInfoOperatorCLI("http://operator:8000/api/v1/")
        with patch(
            "bindctl.requests.request",
            return_value=api_response({"detail": "not found"}, status_code=404),
        ) as mock_request:
            assert client._make_request("GET", "/bindinfos") is None

        mock_request.assert_called_once_with("GET", "http://operator:8000/api/v1/bindinfos")
        assert "not found" in capsys.readouterr().err


class TestCommands:
    def test_apply(self, runner, tmp_path):
        path = tmp_path / "manifests.yaml"
        path.write_text(BINDINFO_YAML)

        with patch("bindctl.requests.request", return_value=api_response({})) as mock_request:
            result = runner.invoke(cli, ["apply", "-f", str(path), "-n", "fallback"])

        assert result.exit_code == 0
        urls = [c.args[1] for c in mock_request.call_args_list]
        assert urls == [
            "http://localhost:8000/api/v1/namespaces/operand-ns/bindinfos/postgres-bindinfo",
            "http://localhost:8000/api/v1/namespaces/fallback/configmaps/postgres-cm",
        ]
        assert "bindinfos/postgres-bindinfo applied in namespace operand-ns" in result.output

    def test_apply_skips_unknown_kind(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("kind: Deployment\nmetadata:\n  name: web\n")

        with patch("bindctl.requests.request") as mock_request:
            result = runner.invoke(cli, ["apply", "-f", str(path)])

        assert result.exit_code == 1
        mock_request.assert_not_called()

    def test_get_table(self, runner):
        with patch(
            "bindctl.requests.request",
            return_value=api_response({"kind": "BindInfoList", "items": [BINDINFO]}),
        ) as mock_request:
            result = runner.invoke(cli, ["get", "bi", "-n", "operand-ns"])

        assert result.exit_code == 0
        assert "PHASE" in result.output
        assert "Completed" in result.output
        assert mock_request.call_args.kwargs["params"] == {"namespace": "operand-ns"}

    def test_get_empty(self, runner):
        with patch(
            "bindctl.requests.request",
            return_value=api_response({"kind": "SecretList", "items": []}),
        ):
            result = runner.invoke(cli, ["get", "secrets"])

        assert "No resources found" in result.output

    def test_get_json(self, runner):
        with patch(
            "bindctl.requests.request",
            return_value=api_response({"kind": "BindInfoList", "items": [BINDINFO]}),
        ):
            result = runner.invoke(cli, ["get", "bindinfos", "-o", "json"])

        assert json.loads(result.output) == [BINDINFO]

    def test_describe_bindinfo_shows_events(self, runner):
        event = {
            "event_type": "Warning",
            "reason": "NotFound",
            "timestamp": "2024-01-01T00:00:00Z",
            "message": "No Secret postgres-secret in the namespace operand-ns",
        }
        with patch(
            "bindctl.requests.request",
            side_effect=[api_response(BINDINFO), api_response([event])],
        ):
            result = runner.invoke(
                cli, ["describe", "bindinfo", "postgres-bindinfo", "-n", "operand-ns"]
            )

        assert result.exit_code == 0
        assert "name: postgres-bindinfo" in result.output
        assert "Events:" in result.output
        assert "NotFound" in result.output

    def test_delete(self, runner):
        with patch("bindctl.requests.request", return_value=api_response({})) as mock_request:
            result = runner.invoke(cli, ["delete", "cm", "postgres-cm", "-n", "operand-ns", "--yes"])

        assert result.exit_code == 0
        assert mock_request.call_args.args == (
            "DELETE",
            "http://localhost:8000/api/v1/namespaces/operand-ns/configmaps/postgres-cm",
        )

    def test_reconcile(self, runner):
        with patch("bindctl.requests.request", return_value=api_response({})) as mock_request:
            result = runner.invoke(cli, ["reconcile", "postgres-bindinfo", "-n", "operand-ns"])

        assert result.exit_code == 0
        assert mock_request.call_args.args[0] == "POST"
        assert mock_request.call_args.args[1].endswith("/bindinfos/postgres-bindinfo/reconcile")

    def test_reconcile_failure(self, runner):
        with patch(
            "bindctl.requests.request",
            return_value=api_response({"detail": "missing"}, status_code=404),
        ):
            result = runner.invoke(cli, ["reconcile", "missing"])

        assert result.exit_code == 1

    def test_history(self, runner):
        entry = {
            "generation": 2,
            "success": True,
            "phase": "Completed",
            "duration_seconds": 0.5,
            "reconcile_time": "2024-01-01T00:00:00",
            "error_message": None,
        }
        with patch("bindctl.requests.request", return_value=api_response([entry])):
            result = runner.invoke(cli, ["history", "postgres-bindinfo"])

        assert result.exit_code == 0
        assert "0.50s" in result.output

    def test_events(self, runner):
        event = {
            "event_type": "Warning",
            "reason": "NotFound",
            "timestamp": "2024-01-01T00:00:00Z",
            "involved_kind": "BindInfo",
            "involved_namespace": "operand-ns",
            "involved_name": "postgres-bindinfo",
            "message": "No Registry operand-ns/common-service",
        }
        with patch("bindctl.requests.request", return_value=api_response([event])) as mock_request:
            result = runner.invoke(cli, ["events", "--name", "postgres-bindinfo"])

        assert result.exit_code == 0
        assert "BindInfo/operand-ns/postgres-bindinfo" in result.output
        assert mock_request.call_args.kwargs["params"] == {
            "limit": 50,
            "name": "postgres-bindinfo",
        }

    def test_server_option(self, runner):
        with patch(
            "bindctl.requests.request",
            return_value=api_response({"kind": "BindInfoList", "items": []}),
        ) as mock_request:
            runner.invoke(cli, ["--server", "http://op:9000/api/v1", "get", "bi"])

        assert mock_request.call_args.args[1] == "http://op:9000/api/v1/bindinfos"
