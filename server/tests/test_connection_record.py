"""Unit tests for the credential ledger, capability set and connection record."""

import pytest

from cimgate.core.connection_record import (
    ConnectionRecord,
    CredentialLedger,
    ProtocolCapabilitySet,
    normalize_hostname,
)
from cimgate.core.errors import BadCredentialError
from cimgate.core.models import (
    IMPLICIT_IDENTITY,
    Credential,
    ErrorCategory,
    Protocol,
    ProtocolHealth,
)


def _cred(username, password="secret"):
    return Credential(username=username, password=password)


@pytest.mark.unit
class TestCredentialLedger:
    def test_resolve_returns_supplied_credential_by_default(self):
        ledger = CredentialLedger(host="sql01")
        credential = _cred("DOMAIN\\alice")

        assert ledger.resolve(credential) is credential
        assert ledger.resolve(None) is None

    def test_failed_credential_short_circuits(self):
        ledger = CredentialLedger(host="sql02")
        ledger.record_failure(_cred("domain\\bad"))

        with pytest.raises(BadCredentialError) as excinfo:
            ledger.resolve(_cred("DOMAIN\\Bad", password="other"))

        assert excinfo.value.category is ErrorCategory.AUTHENTICATION_FAILURE
        assert excinfo.value.identity == "domain\\bad"

    def test_failed_implicit_identity_short_circuits(self):
        ledger = CredentialLedger(host="sql01")
        ledger.record_failure(None)

        with pytest.raises(BadCredentialError):
            ledger.resolve(None)

    def test_identity_moves_between_good_and_bad(self):
        ledger = CredentialLedger(host="sql01")
        credential = _cred("domain\\alice")

        ledger.record_success(credential)
        assert ledger.is_good(credential) and not ledger.is_bad(credential)

        ledger.record_failure(credential)
        assert ledger.is_bad(credential) and not ledger.is_good(credential)

        ledger.record_success(credential)
        assert ledger.is_good(credential) and not ledger.is_bad(credential)

    def test_prefer_good_substitutes_most_recent_explicit_credential(self):
        ledger = CredentialLedger(host="sql01", prefer_good_override=True)
        first = _cred("domain\\first")
        second = _cred("domain\\second")
        ledger.record_success(first)
        ledger.record_success(second)
        ledger.record_success(None)

        assert ledger.resolve(_cred("domain\\other")) is second
        assert ledger.resolve(None) is second

    def test_prefer_good_without_known_credential_keeps_supplied(self):
        ledger = CredentialLedger(host="sql01", prefer_good_override=True)
        credential = _cred("domain\\alice")

        assert ledger.resolve(credential) is credential

    def test_prefer_implicit_when_implicit_identity_is_good(self):
        ledger = CredentialLedger(host="sql01", prefer_implicit_override=True)
        credential = _cred("domain\\alice")
        assert ledger.resolve(credential) is credential

        ledger.record_success(None)
        assert ledger.resolve(credential) is None

    def test_prefer_good_wins_over_prefer_implicit(self):
        ledger = CredentialLedger(
            host="sql01", prefer_good_override=True, prefer_implicit_override=True
        )
        explicit = _cred("domain\\alice")
        ledger.record_success(None)
        ledger.record_success(explicit)

        assert ledger.resolve(_cred("domain\\other")) is explicit

    def test_bad_credential_checked_before_substitution(self):
        ledger = CredentialLedger(host="sql01", prefer_good_override=True)
        ledger.record_success(_cred("domain\\alice"))
        ledger.record_failure(_cred("domain\\bad"))

        with pytest.raises(BadCredentialError):
            ledger.resolve(_cred("domain\\bad"))


@pytest.mark.unit
class TestProtocolCapabilitySet:
    def test_new_set_is_untested_and_fully_enabled(self):
        capabilities = ProtocolCapabilitySet()

        assert capabilities.enabled_in_order() == [
            Protocol.CIM_RM,
            Protocol.CIM_DCOM,
            Protocol.WMI,
            Protocol.POWERSHELL_REMOTING,
        ]
        assert all(
            capabilities.health_of(p) is ProtocolHealth.UNTESTED for p in Protocol
        )

    def test_health_transitions(self):
        capabilities = ProtocolCapabilitySet()

        capabilities.record_failure(Protocol.WMI)
        capabilities.record_failure(Protocol.CIM_RM)
        assert capabilities.failed_protocols() == [Protocol.CIM_RM, Protocol.WMI]

        capabilities.record_success(Protocol.CIM_RM)
        assert capabilities.health_of(Protocol.CIM_RM) is ProtocolHealth.LAST_SUCCEEDED
        assert capabilities.failed_protocols() == [Protocol.WMI]


@pytest.mark.unit
class TestConnectionRecord:
    def test_hostname_is_normalized(self):
        assert normalize_hostname("  SQL01.Example.COM ") == "sql01.example.com"
        record = ConnectionRecord.create("SQL01")
        assert record.computer_name == "sql01"
        assert record.credentials.host == "sql01"

    def test_create_applies_enabled_protocols_and_overrides(self):
        record = ConnectionRecord.create(
            "sql01",
            [Protocol.WMI, Protocol.CIM_RM],
            prefer_good_credential=True,
        )

        assert record.protocols.enabled_in_order() == [Protocol.CIM_RM, Protocol.WMI]
        assert record.credentials.prefer_good_override is True
        assert record.credentials.prefer_implicit_override is False

    def test_mark_protocol_success_and_failure(self):
        record = ConnectionRecord.create("sql01")

        record.mark_protocol_failure(Protocol.CIM_RM)
        record.mark_protocol_success(Protocol.CIM_DCOM)

        assert record.last_protocol is Protocol.CIM_DCOM
        assert record.last_success is not None
        assert record.last_failure is not None
        assert record.protocols.health_of(Protocol.CIM_RM) is ProtocolHealth.LAST_FAILED

    def test_copy_is_independent(self):
        record = ConnectionRecord.create("sql01")
        clone = record.copy()

        clone.credentials.record_failure(None)
        clone.mark_protocol_failure(Protocol.WMI)

        assert not record.credentials.is_bad(None)
        assert record.protocols.health_of(Protocol.WMI) is ProtocolHealth.UNTESTED

    def test_view_never_exposes_passwords(self):
        record = ConnectionRecord.create("sql01")
        record.credentials.record_success(_cred("DOMAIN\\Alice", password="hunter2"))
        record.credentials.record_success(None)
        record.credentials.record_failure(_cred("domain\\bad"))

        view = record.to_view()
        dumped = view.model_dump_json()

        assert view.good_credentials == ["domain\\alice", IMPLICIT_IDENTITY]
        assert view.bad_credentials == ["domain\\bad"]
        assert "hunter2" not in dumped
