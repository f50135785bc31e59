"""
Tests for the cryptographic core.

Tests cover:
- Argon2id key derivation and its parameter checks
- Password verification hashes
- AEAD encryption, tamper detection and nonce freshness
- MasterKey lifecycle and SecretBuffer zeroization
- Record name obfuscation
"""
import os
import pickle
import threading

import pytest

from navigator_vault.crypto import (
    KEY_LENGTH,
    NONCE_SIZE,
    SALT_LENGTH,
    TAG_SIZE,
    CryptoManager,
    KdfParams,
    MasterKey,
    derive_key,
    derive_subkey,
    generate_salt,
    hash_password,
    record_name,
    token_digest,
    verify_password,
)
from navigator_vault.exceptions import (
    CryptoError,
    DerivationFailed,
    IntegrityViolation,
    VaultLocked,
)
from navigator_vault.memory import SecretBuffer

from .conftest import FAST_KDF


def random_key() -> SecretBuffer:
    return SecretBuffer(os.urandom(KEY_LENGTH))


@pytest.fixture(params=["aes256-gcm", "chacha20poly1305"])
def manager(request):
    return CryptoManager(request.param)


# --- Key derivation ---

class TestKeyDerivation:
    """Tests for derive_key and KdfParams."""

    def test_derivation_is_deterministic(self):
        """Same password and salt always yield the same key."""
        salt = generate_salt()
        first = derive_key("my_master_password", salt, FAST_KDF)
        second = derive_key("my_master_password", salt, FAST_KDF)
        assert len(first) == KEY_LENGTH
        assert bytes(first.view()) == bytes(second.view())

    def test_salt_changes_key(self):
        """A different salt yields a different key."""
        a = derive_key("my_master_password", generate_salt(), FAST_KDF)
        b = derive_key("my_master_password", generate_salt(), FAST_KDF)
        assert bytes(a.view()) != bytes(b.view())

    def test_password_changes_key(self):
        """A different password yields a different key."""
        salt = generate_salt()
        a = derive_key("password-one", salt, FAST_KDF)
        b = derive_key("password-two", salt, FAST_KDF)
        assert bytes(a.view()) != bytes(b.view())

    def test_salt_length_mismatch(self):
        """A salt of the wrong length is rejected."""
        with pytest.raises(DerivationFailed):
            derive_key("my_master_password", os.urandom(SALT_LENGTH - 1), FAST_KDF)

    @pytest.mark.parametrize("password", ["", None, b"bytes"])
    def test_invalid_password(self, password):
        """Empty or non-string passwords are rejected."""
        with pytest.raises(DerivationFailed):
            derive_key(password, generate_salt(), FAST_KDF)

    @pytest.mark.parametrize("params", [
        KdfParams(time_cost=0, memory_cost=64, parallelism=1),
        KdfParams(time_cost=1, memory_cost=64, parallelism=0),
        KdfParams(time_cost=1, memory_cost=8, parallelism=4),
    ])
    def test_weak_parameters_rejected(self, params):
        """Parameters below the Argon2 minima raise instead of degrading."""
        with pytest.raises(DerivationFailed):
            derive_key("my_master_password", generate_salt(), params)

    def test_default_parameters(self):
        """Documented defaults: t=3, m=64 MiB, p=4."""
        assert KdfParams() == KdfParams(time_cost=3, memory_cost=65536, parallelism=4)

    def test_params_round_trip(self):
        """Parameters survive persistence as a dict."""
        assert KdfParams.from_dict(FAST_KDF.to_dict()) == FAST_KDF

    @pytest.mark.parametrize("data", [{}, {"time_cost": "x", "memory_cost": 64, "parallelism": 1}])
    def test_malformed_params(self, data):
        """Malformed persisted parameters raise DerivationFailed."""
        with pytest.raises(DerivationFailed):
            KdfParams.from_dict(data)

    def test_subkeys_are_domain_separated(self):
        """Records and names contexts never share key material."""
        master = random_key()
        records = derive_subkey(master, "navigator-vault-records")
        names = derive_subkey(master, "navigator-vault-names")
        again = derive_subkey(master, "navigator-vault-records")
        assert bytes(records.view()) != bytes(names.view())
        assert bytes(records.view()) == bytes(again.view())


# --- Password verification ---

class TestPasswordVerification:
    """Tests for hash_password / verify_password."""

    def test_hash_is_argon2id(self):
        """Verification hashes are argon2id PHC strings."""
        assert hash_password("my_master_password", FAST_KDF).startswith("$argon2id$")

    def test_hash_has_own_salt(self):
        """Two hashes of one password differ (embedded random salt)."""
        assert hash_password("pw-12345678", FAST_KDF) != hash_password("pw-12345678", FAST_KDF)

    def test_verify_correct_password(self):
        """The right password verifies."""
        hashed = hash_password("my_master_password", FAST_KDF)
        assert verify_password("my_master_password", hashed) is True

    def test_verify_wrong_password(self):
        """A wrong password does not verify."""
        hashed = hash_password("my_master_password", FAST_KDF)
        assert verify_password("wrong_password", hashed) is False

    @pytest.mark.parametrize("hashed", ["", "not-a-hash", "$argon2id$garbage", None])
    def test_malformed_hash_looks_like_mismatch(self, hashed):
        """A corrupted hash is reported exactly like a wrong password."""
        assert verify_password("my_master_password", hashed) is False


# --- Authenticated encryption ---

class TestCryptoManager:
    """Tests for AEAD encryption and decryption."""

    def test_round_trip(self, manager):
        """decrypt(encrypt(P, K), K) == P."""
        key = random_key()
        for plaintext in (b"", b"x", b"secure_password_123", os.urandom(4096)):
            sealed, nonce = manager.encrypt(plaintext, key)
            assert manager.decrypt(sealed, nonce, key) == plaintext

    def test_output_shape(self, manager):
        """Nonce is 96 bits and the tag adds 16 bytes."""
        sealed, nonce = manager.encrypt(b"hello", random_key())
        assert len(nonce) == NONCE_SIZE
        assert len(sealed) == len(b"hello") + TAG_SIZE

    def test_unknown_algorithm(self):
        """Only the two supported AEAD schemes are accepted."""
        with pytest.raises(CryptoError):
            CryptoManager("aes128-cbc")

    def test_algorithm_name_is_case_insensitive(self):
        assert CryptoManager("AES256-GCM").algorithm == "aes256-gcm"

    def test_wrong_key(self, manager):
        """A different key fails authentication."""
        sealed, nonce = manager.encrypt(b"secret", random_key())
        with pytest.raises(IntegrityViolation):
            manager.decrypt(sealed, nonce, random_key())

    def test_ciphertext_and_tag_bit_flips(self, manager):
        """Flipping any bit of ciphertext or tag is detected."""
        key = random_key()
        sealed, nonce = manager.encrypt(b"secure_password_123", key)
        for index in range(len(sealed)):
            for bit in (0x01, 0x80):
                corrupted = bytearray(sealed)
                corrupted[index] ^= bit
                with pytest.raises(IntegrityViolation):
                    manager.decrypt(bytes(corrupted), nonce, key)

    def test_nonce_bit_flips(self, manager):
        """Flipping any bit of the nonce is detected."""
        key = random_key()
        sealed, nonce = manager.encrypt(b"secure_password_123", key)
        for index in range(len(nonce)):
            corrupted = bytearray(nonce)
            corrupted[index] ^= 0x01
            with pytest.raises(IntegrityViolation):
                manager.decrypt(sealed, bytes(corrupted), key)

    def test_associated_data_is_bound(self, manager):
        """Decrypting with different associated data fails."""
        key = random_key()
        sealed, nonce = manager.encrypt(b"secret", key, b"name-a")
        assert manager.decrypt(sealed, nonce, key, b"name-a") == b"secret"
        with pytest.raises(IntegrityViolation):
            manager.decrypt(sealed, nonce, key, b"name-b")

    def test_truncated_input(self, manager):
        """Short ciphertexts and wrong nonce lengths never reach the cipher."""
        key = random_key()
        sealed, nonce = manager.encrypt(b"secret", key)
        with pytest.raises(IntegrityViolation):
            manager.decrypt(sealed[:TAG_SIZE - 1], nonce, key)
        with pytest.raises(IntegrityViolation):
            manager.decrypt(sealed, nonce[:-1], key)

    def test_nonce_uniqueness(self):
        """No nonce repeats across many encryptions under one key."""
        manager = CryptoManager()
        key = random_key()
        nonces = {manager.encrypt(b"x", key)[1] for _ in range(20000)}
        assert len(nonces) == 20000

    def test_record_algorithm_tag_wins(self):
        """A record keeps decrypting with the algorithm it was written with."""
        key = random_key()
        sealed, nonce = CryptoManager("chacha20poly1305").encrypt(b"old", key)
        aes = CryptoManager("aes256-gcm")
        assert aes.decrypt(sealed, nonce, key, algorithm="chacha20poly1305") == b"old"

    def test_unknown_record_algorithm(self):
        key = random_key()
        sealed, nonce = CryptoManager().encrypt(b"x", key)
        with pytest.raises(IntegrityViolation):
            CryptoManager().decrypt(sealed, nonce, key, algorithm="rot13")

    def test_wiped_key_refused(self):
        """A wiped key cannot encrypt."""
        key = random_key()
        key.wipe()
        with pytest.raises(CryptoError):
            CryptoManager().encrypt(b"x", key)

    def test_short_key_refused(self):
        with pytest.raises(CryptoError):
            CryptoManager().encrypt(b"x", SecretBuffer(os.urandom(16)))


# --- Key handles and secret memory ---

class TestMasterKey:
    """Tests for MasterKey lease/clone/wipe."""

    def test_lease_yields_subkeys(self):
        key = MasterKey(random_key(), "epoch-test")
        with key.lease() as (records_key, names_key):
            assert len(records_key) == KEY_LENGTH
            assert bytes(records_key.view()) != bytes(names_key.view())

    def test_wiped_key_cannot_be_leased(self):
        """Any use after wipe() raises VaultLocked."""
        key = MasterKey(random_key(), "epoch-test")
        key.wipe()
        assert key.alive is False
        with pytest.raises(VaultLocked):
            with key.lease():
                pass
        with pytest.raises(VaultLocked):
            key.clone()

    def test_clone_is_independent(self):
        """Wiping the original leaves the clone usable."""
        key = MasterKey(random_key(), "epoch-test")
        clone = key.clone()
        with key.lease() as (rk, _), clone.lease() as (crk, _):
            assert bytes(rk.view()) == bytes(crk.view())
        key.wipe()
        assert clone.alive is True
        assert clone.epoch == "epoch-test"

    def test_leases_are_shared(self):
        """Several threads hold the same key at once."""
        key = MasterKey(random_key(), "epoch-test")
        barrier = threading.Barrier(3)

        def hold():
            with key.lease():
                barrier.wait(timeout=5)

        threads = [threading.Thread(target=hold) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not barrier.broken

    def test_wipe_waits_for_running_lease(self):
        key = MasterKey(random_key(), "epoch-test")
        entered = threading.Event()
        release = threading.Event()

        def hold():
            with key.lease():
                entered.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold)
        holder.start()
        assert entered.wait(timeout=5)
        wiper = threading.Thread(target=key.wipe)
        wiper.start()
        wiper.join(timeout=0.2)
        assert wiper.is_alive()
        # a pending wipe refuses new leases
        assert key.alive is False
        with pytest.raises(VaultLocked):
            with key.lease():
                pass
        release.set()
        holder.join(timeout=5)
        wiper.join(timeout=5)
        assert not wiper.is_alive()
        assert key._material.wiped

    def test_context_manager_wipes(self):
        with MasterKey(random_key(), "epoch-test") as key:
            assert key.alive
        assert not key.alive

    def test_repr_has_no_material(self):
        key = MasterKey(SecretBuffer(b"\x41" * KEY_LENGTH), "epoch-test")
        assert "AAAA" not in repr(key)


class TestSecretBuffer:
    """Tests for zeroization of secret buffers."""

    def test_wipe_zeroes_in_place(self):
        buf = SecretBuffer(bytes(range(1, 33)))
        data = buf._data
        buf.wipe()
        assert buf.wiped
        assert data == bytearray(32)

    def test_wipe_is_idempotent(self):
        buf = SecretBuffer(b"secret")
        buf.wipe()
        buf.wipe()
        assert buf.wiped

    def test_source_bytearray_is_zeroed(self):
        """Ownership moves into the buffer: the caller's bytearray is cleared."""
        source = bytearray(b"secret")
        buf = SecretBuffer(source)
        assert source == bytearray(6)
        assert bytes(buf.view()) == b"secret"

    def test_view_is_read_only(self):
        view = SecretBuffer(b"secret").view()
        with pytest.raises(TypeError):
            view[0] = 0

    def test_view_after_wipe(self):
        buf = SecretBuffer(b"secret")
        buf.wipe()
        with pytest.raises(ValueError):
            buf.view()

    def test_copy_is_independent(self):
        buf = SecretBuffer(b"secret")
        clone = buf.copy()
        buf.wipe()
        assert bytes(clone.view()) == b"secret"

    def test_scope_exit_wipes(self):
        with SecretBuffer(b"secret") as buf:
            pass
        assert buf.wiped

    def test_cannot_be_pickled(self):
        with pytest.raises(TypeError):
            pickle.dumps(SecretBuffer(b"secret"))


# --- Record naming ---

class TestRecordName:
    """Tests for the keyed id -> filename transform."""

    def test_deterministic(self):
        """The same (id, key) always yields the same name."""
        key = random_key()
        assert record_name("entry-1", key) == record_name("entry-1", key)

    def test_unlinkable(self):
        """Different ids or keys give unrelated hex names."""
        key = random_key()
        a = record_name("entry-1", key)
        b = record_name("entry-2", key)
        c = record_name("entry-1", random_key())
        assert len({a, b, c}) == 3
        assert len(a) == 64
        int(a, 16)

    def test_name_does_not_contain_id(self):
        key = random_key()
        assert "github" not in record_name("github", key)

    def test_token_digest(self):
        assert token_digest("abc") == token_digest("abc")
        assert token_digest("abc") != token_digest("abd")
        assert "abc" not in token_digest("abc")
