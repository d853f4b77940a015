"""Unit tests for BindInfo dependency resolution and error aggregation."""

import pytest

from conftest import OPERAND_NS, make_bindinfo, make_registry, make_request, seed
from models import Binding, Phase, ReconcileRequest, RequestEntry, RequestOperand
from plugins.reconcilers.bindinfo.aggregate import MultiError, phase_for
from plugins.reconcilers.bindinfo.resolver import (
    RegistryNotFoundError,
    RequestNotFoundError,
    get_binding_info_from_request,
    load_request,
    resolve_registry,
)


def defaulted_bindinfo(**kwargs):
    bindinfo = make_bindinfo(**kwargs)
    bindinfo.set_defaults()
    return bindinfo


@pytest.mark.asyncio
class TestResolveRegistry:
    """Tests for resolve_registry()."""

    async def test_missing_registry_raises(self, store):
        with pytest.raises(RegistryNotFoundError) as exc_info:
            await resolve_registry(store, defaulted_bindinfo())

        assert str(exc_info.value) == (
            "NotFound Registry common-service from the namespace operand-ns"
        )

    async def test_returns_source_and_consumers(self, store):
        await seed(
            store,
            make_registry(operand_namespace="db-ns", consumers=(("r", "a"), ("r", "b"))),
        )

        targets = await resolve_registry(store, defaulted_bindinfo())

        assert targets.source_namespace == "db-ns"
        assert [c.namespace for c in targets.consumers] == ["a", "b"]

    async def test_uses_registry_namespace(self, store):
        """Test the Registry is looked up in the declared namespace."""
        await seed(store, make_registry(namespace="shared"))

        targets = await resolve_registry(
            store, defaulted_bindinfo(registry_namespace="shared")
        )

        assert targets.source_namespace == OPERAND_NS

    async def test_unlisted_operand(self, store):
        await seed(store, make_registry(operand="redis", consumers=(("r", "a"),)))

        targets = await resolve_registry(store, defaulted_bindinfo())

        assert targets.source_namespace == ""
        assert targets.consumers == []


@pytest.mark.asyncio
class TestLoadRequest:
    """Tests for load_request()."""

    async def test_loads_request(self, store):
        await seed(store, make_request())

        request = await load_request(store, ReconcileRequest("my-request", "consumer-a"))

        assert request.metadata.name == "my-request"

    async def test_missing_request_raises(self, store):
        with pytest.raises(RequestNotFoundError, match="NotFound Request x from the namespace y"):
            await load_request(store, ReconcileRequest("x", "y"))


class TestGetBindingInfoFromRequest:
    """Tests for get_binding_info_from_request()."""

    def test_match(self):
        result = get_binding_info_from_request(defaulted_bindinfo(), make_request())

        assert result == ("my-secret", "my-cm")

    def test_registry_mismatch(self):
        request = make_request(registry="other")

        assert get_binding_info_from_request(defaulted_bindinfo(), request) == ("", "")

    def test_registry_namespace_mismatch(self):
        request = make_request(registry_namespace="elsewhere")

        assert get_binding_info_from_request(defaulted_bindinfo(), request) == ("", "")

    def test_registry_namespace_optional(self):
        """Test an entry without a registry namespace matches on name alone."""
        request = make_request(registry_namespace="")

        assert get_binding_info_from_request(defaulted_bindinfo(), request) == (
            "my-secret",
            "my-cm",
        )

    def test_operand_mismatch(self):
        request = make_request(operand="redis")

        assert get_binding_info_from_request(defaulted_bindinfo(), request) == ("", "")

    def test_private_binding_skipped(self):
        request = make_request(scope="private")

        assert get_binding_info_from_request(defaulted_bindinfo(), request) == ("", "")

    def test_first_public_binding_wins(self):
        request = make_request()
        request.requests[0].operands[0].bindings = [
            Binding(scope="private", secret="hidden", configmap="hidden"),
            Binding(scope="public", secret="first", configmap=""),
            Binding(scope="public", secret="second", configmap="second"),
        ]

        assert get_binding_info_from_request(defaulted_bindinfo(), request) == ("first", "")

    def test_later_entry_matches(self):
        request = make_request(registry="other")
        request.requests.append(
            RequestEntry(
                registry="common-service",
                operands=[
                    RequestOperand(
                        name="postgres",
                        bindings=[Binding(scope="public", secret="s", configmap="c")],
                    )
                ],
            )
        )

        assert get_binding_info_from_request(defaulted_bindinfo(), request) == ("s", "c")


class TestMultiError:
    """Tests for MultiError and phase_for()."""

    def test_empty_is_falsy(self):
        errors = MultiError()

        assert not errors
        assert len(errors) == 0
        assert phase_for(errors) == Phase.COMPLETED

    def test_collects_errors(self):
        errors = MultiError()
        errors.add(ValueError("first"))
        errors.add(RuntimeError("second"))

        assert errors
        assert len(errors) == 2
        assert phase_for(errors) == Phase.FAILED
        assert str(errors) == (
            "the following errors occurred:\n  - first\n  - second"
        )
