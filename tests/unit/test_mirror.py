"""Tests for ClientSideSyncMirror.

Ledger and IPFS are AsyncMocks; asyncio.sleep is patched so retry delays are
asserted rather than waited out.
"""
import base64
import json
from unittest.mock import AsyncMock, call, patch

import pytest
from stellar_sdk import Keypair

from petchain.crypto.encryptor import decrypt, derive_key
from petchain.mirror.stellar_sync import (
    ClientSideSyncMirror,
    MedicalRecord,
    MirrorStatus,
    SyncResult,
    ledger_data_key,
)

ENCRYPTION_KEY = "owner-passphrase"
CID = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"


def make_record(record_type="vaccination", critical=False, record_id="rec-1", data=None):
    return MedicalRecord(
        id=record_id,
        pet_id="pet-7",
        type=record_type,
        data=data if data is not None else {"vaccine": "Rabies", "lot": "A12"},
        timestamp="2024-05-01T10:00:00Z",
        critical=critical,
    )


def make_ledger():
    ledger = AsyncMock()
    ledger.estimate_fee = AsyncMock(return_value="200")
    ledger.manage_data = AsyncMock(return_value="ab" * 32)
    ledger.transaction_successful = AsyncMock(return_value=True)
    return ledger


def make_ipfs():
    ipfs = AsyncMock()
    ipfs.upload = AsyncMock(return_value=CID)
    return ipfs


@pytest.fixture(name="ledger")
def ledger_fixture():
    return make_ledger()


@pytest.fixture(name="ipfs")
def ipfs_fixture():
    return make_ipfs()


@pytest.fixture(name="mirror")
def mirror_fixture(ledger, ipfs):
    return ClientSideSyncMirror(ledger=ledger, ipfs=ipfs, kdf_iterations=1000)


@pytest.fixture(name="signer")
def signer_fixture():
    return Keypair.random()


class TestMedicalRecord:
    def test_from_camel_case_dict(self):
        record = MedicalRecord.from_dict({
            "id": 12,
            "petId": "pet-7",
            "type": "diagnosis",
            "data": {"finding": "otitis"},
            "critical": True,
        })
        assert record.id == "12"
        assert record.pet_id == "pet-7"
        assert record.critical is True

    def test_missing_id_raises(self):
        with pytest.raises(KeyError):
            MedicalRecord.from_dict({"type": "treatment"})

    def test_ledger_data_key(self):
        assert ledger_data_key(make_record()) == "pet_pet-7_vaccination"


class TestSelectiveAnchoring:
    @pytest.mark.parametrize("record_type,critical,anchored", [
        ("vaccination", False, True),
        ("diagnosis", False, True),
        ("treatment", True, True),
        ("prescription", True, True),
        ("treatment", False, False),
        ("prescription", False, False),
    ])
    def test_should_anchor(self, record_type, critical, anchored):
        assert ClientSideSyncMirror.should_anchor(make_record(record_type, critical)) is anchored

    @pytest.mark.asyncio
    async def test_non_critical_treatment_skips_ledger(self, mirror, ledger, ipfs, signer):
        result = await mirror.sync_record(make_record("treatment"), signer, ENCRYPTION_KEY)

        assert result.status == MirrorStatus.SUCCESS
        assert result.ledger_ref is None
        ledger.manage_data.assert_not_called()
        ipfs.upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_critical_treatment_is_anchored(self, mirror, ledger, signer):
        result = await mirror.sync_record(
            make_record("treatment", critical=True), signer, ENCRYPTION_KEY
        )
        assert result.status == MirrorStatus.SUCCESS
        ledger.manage_data.assert_awaited_once()


class TestEncoding:
    def test_encode_record_decrypts_to_canonical_data(self, mirror):
        record = make_record(data={"b": 2, "a": 1})
        blob = base64.b64decode(mirror.encode_record(record, ENCRYPTION_KEY))
        plaintext = decrypt(blob, derive_key(ENCRYPTION_KEY, iterations=1000))
        assert plaintext == b'{"a":1,"b":2}'
        assert json.loads(plaintext) == {"a": 1, "b": 2}

    def test_derived_keys_cached_per_secret(self, mirror):
        with patch(
            "petchain.mirror.stellar_sync.derive_key",
            wraps=derive_key,
        ) as spy:
            mirror.encode_record(make_record(), "k1")
            mirror.encode_record(make_record(), "k1")
            mirror.encode_record(make_record(), "k2")
        assert spy.call_count == 2

    def test_key_cache_is_bounded(self, ledger, ipfs):
        mirror = ClientSideSyncMirror(
            ledger=ledger, ipfs=ipfs, kdf_iterations=1, key_cache_size=16
        )
        for i in range(500):
            mirror.encode_record(make_record(), f"owner-secret-{i}")
        assert len(mirror._keys) == 16

    def test_key_cache_holds_no_plaintext_secrets(self, ledger, ipfs):
        mirror = ClientSideSyncMirror(ledger=ledger, ipfs=ipfs, kdf_iterations=1)
        secrets = [f"owner-secret-{i}" for i in range(500)]
        for secret in secrets:
            mirror.encode_record(make_record(), secret)

        for fingerprint in mirror._keys:
            assert isinstance(fingerprint, bytes)
            assert len(fingerprint) == 32
        cached = b"".join(list(mirror._keys) + list(mirror._keys.values()))
        for secret in secrets[-5:]:
            assert secret.encode() not in cached

    def test_key_cache_evicts_least_recently_used(self, ledger, ipfs):
        mirror = ClientSideSyncMirror(
            ledger=ledger, ipfs=ipfs, kdf_iterations=1, key_cache_size=2
        )
        with patch(
            "petchain.mirror.stellar_sync.derive_key",
            wraps=derive_key,
        ) as spy:
            mirror.encode_record(make_record(), "k1")
            mirror.encode_record(make_record(), "k2")
            mirror.encode_record(make_record(), "k1")  # k2 is now oldest
            mirror.encode_record(make_record(), "k3")  # evicts k2
            mirror.encode_record(make_record(), "k1")
            assert spy.call_count == 3
            mirror.encode_record(make_record(), "k2")
            assert spy.call_count == 4

    @pytest.mark.asyncio
    async def test_small_payload_embedded(self, mirror, ledger, ipfs, signer):
        with patch.object(mirror, "encode_record", return_value="A" * 1024):
            result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)

        ipfs.upload.assert_not_called()
        ledger.manage_data.assert_awaited_once_with(
            "pet_pet-7_vaccination", "A" * 64, signer=signer, fee=200
        )
        assert result.store_address is None

    @pytest.mark.asyncio
    async def test_large_payload_goes_to_ipfs(self, mirror, ledger, ipfs, signer):
        with patch.object(mirror, "encode_record", return_value="A" * 1025):
            result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)

        ipfs.upload.assert_awaited_once_with(b"A" * 1025)
        ledger.manage_data.assert_awaited_once_with(
            "pet_pet-7_vaccination", CID, signer=signer, fee=200
        )
        assert result.store_address == CID

    @pytest.mark.asyncio
    async def test_success_records_tx_and_fee(self, mirror, signer):
        result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)
        assert result.status == MirrorStatus.SUCCESS
        assert result.ledger_ref == "ab" * 32
        assert result.fee == "200"
        assert result.attempts == 0
        assert result.error is None


class TestRetry:
    @pytest.mark.asyncio
    async def test_linear_backoff_then_failed(self, mirror, ledger, signer):
        ledger.manage_data.side_effect = RuntimeError("tx_bad_seq")

        with patch("petchain.mirror.stellar_sync.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)

        assert result.status == MirrorStatus.FAILED
        assert result.attempts == 3
        assert result.error == "tx_bad_seq"
        assert ledger.manage_data.await_count == 4
        assert sleep.await_args_list == [call(2.0), call(4.0), call(6.0)]

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self, mirror, ledger, signer):
        ledger.manage_data.side_effect = [RuntimeError("timeout"), "cd" * 32]

        with patch("petchain.mirror.stellar_sync.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)

        assert result.status == MirrorStatus.SUCCESS
        assert result.ledger_ref == "cd" * 32
        assert result.attempts == 1
        assert result.error is None
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_retry_reruns_whole_pipeline(self, mirror, ledger, ipfs, signer):
        ipfs.upload.side_effect = [RuntimeError("ipfs down"), CID]

        with patch.object(mirror, "encode_record", return_value="A" * 2000), \
                patch("petchain.mirror.stellar_sync.asyncio.sleep", new=AsyncMock()):
            result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)

        assert result.status == MirrorStatus.SUCCESS
        assert ipfs.upload.await_count == 2

    @pytest.mark.asyncio
    async def test_custom_retry_budget(self, ledger, ipfs, signer):
        mirror = ClientSideSyncMirror(
            ledger=ledger, ipfs=ipfs, max_retries=1, retry_base_seconds=0.5, kdf_iterations=1000
        )
        ledger.manage_data.side_effect = RuntimeError("nope")

        with patch("petchain.mirror.stellar_sync.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)

        assert result.attempts == 1
        assert sleep.await_args_list == [call(0.5)]

    @pytest.mark.asyncio
    async def test_empty_error_message_uses_class_name(self, mirror, ledger, signer):
        mirror.max_retries = 0
        ledger.manage_data.side_effect = TimeoutError()
        result = await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)
        assert result.error == "TimeoutError"

    @pytest.mark.asyncio
    async def test_failed_attempt_logged(self, mirror, ledger, signer, caplog):
        mirror.max_retries = 0
        ledger.manage_data.side_effect = RuntimeError("tx_bad_seq")
        await mirror.sync_record(make_record(), signer, ENCRYPTION_KEY)
        assert "Mirror sync failed for record rec-1 (attempt 1/1): tx_bad_seq" in caplog.text


class TestStatuses:
    @pytest.mark.asyncio
    async def test_keyed_by_record_id_only(self, mirror, signer):
        await mirror.sync_record(make_record("vaccination", record_id="r1"), signer, ENCRYPTION_KEY)
        await mirror.sync_record(make_record("treatment", record_id="r1"), signer, ENCRYPTION_KEY)

        statuses = await mirror.get_all_sync_statuses()
        assert len(statuses) == 1
        # The later (non-anchored) treatment sync replaced the vaccination's result
        assert statuses[0].ledger_ref is None

    @pytest.mark.asyncio
    async def test_get_sync_status(self, mirror, signer):
        await mirror.sync_record(make_record(record_id="r9"), signer, ENCRYPTION_KEY)
        status = await mirror.get_sync_status("r9")
        assert isinstance(status, SyncResult)
        assert status.status == MirrorStatus.SUCCESS
        assert await mirror.get_sync_status("unknown") is None

    def test_result_to_dict(self):
        result = SyncResult(
            record_id="r1", status=MirrorStatus.SUCCESS, ledger_ref="tx", store_address=CID, fee="100"
        )
        assert result.to_dict() == {
            "recordId": "r1",
            "status": "success",
            "attempts": 0,
            "fee": "100",
            "txHash": "tx",
            "ipfsHash": CID,
        }


class TestVerify:
    @pytest.mark.asyncio
    async def test_unknown_record_is_false(self, mirror, ledger):
        assert await mirror.verify_record("nope") is False
        ledger.transaction_successful.assert_not_called()

    @pytest.mark.asyncio
    async def test_successful_transaction(self, mirror, ledger, signer):
        await mirror.sync_record(make_record(record_id="r1"), signer, ENCRYPTION_KEY)
        assert await mirror.verify_record("r1") is True
        ledger.transaction_successful.assert_awaited_once_with("ab" * 32)

    @pytest.mark.asyncio
    async def test_no_tx_hash_is_false(self, mirror, signer):
        await mirror.sync_record(make_record("treatment", record_id="r1"), signer, ENCRYPTION_KEY)
        assert await mirror.verify_record("r1") is False

    @pytest.mark.asyncio
    async def test_lookup_error_fails_closed(self, mirror, ledger, signer):
        await mirror.sync_record(make_record(record_id="r1"), signer, ENCRYPTION_KEY)
        ledger.transaction_successful.side_effect = RuntimeError("horizon down")
        assert await mirror.verify_record("r1") is False
