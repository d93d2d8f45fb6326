import pytest
from Crypto.Cipher import AES

from holepunch.entropy import NonceAES128, NonceMD5

KEY = bytes(range(100, 116))
CANDIDATES = [bytes([i]) * 16 for i in range(1, 40)]


def _md5_seed():
    return next(s for s in CANDIDATES if NonceMD5(seed=s).fill()[0] != 0)


def _aes_seed():
    return next(s for s in CANDIDATES if NonceAES128(key=KEY, seed=s).fill()[0] != 0)


def test_md5_nonce_length_and_changes():
    gen = NonceMD5()
    a, b = gen.fill(), gen.fill()
    assert len(a) == 16 and len(b) == 16
    assert a != b


def test_md5_deterministic_with_seed():
    seed = _md5_seed()
    one, two = NonceMD5(seed=seed), NonceMD5(seed=seed)
    assert [one.fill(), one.fill()] == [two.fill(), two.fill()]


def test_md5_chain_continues_from_output():
    seed = _md5_seed()
    gen = NonceMD5(seed=seed)
    first = gen.fill()
    second = gen.fill()
    assert NonceMD5(seed=first).fill() == second


def test_md5_zero_leading_seed_is_reseeded():
    a = NonceMD5(seed=bytes(16)).fill()
    b = NonceMD5(seed=bytes(16)).fill()
    assert len(a) == 16
    assert a != b


def test_md5_bad_seed_length():
    with pytest.raises(ValueError):
        NonceMD5(seed=b"short")


def test_aes_nonce_is_encryption_of_seed():
    seed = _aes_seed()
    nonce = NonceAES128(key=KEY, seed=seed).fill()
    assert AES.new(KEY, AES.MODE_ECB).decrypt(nonce) == seed


def test_aes_chain_continues_from_output():
    seed = _aes_seed()
    gen = NonceAES128(key=KEY, seed=seed)
    first = gen.fill()
    second = gen.fill()
    assert NonceAES128(key=KEY, seed=first).fill() == second


def test_aes_random_instances_differ():
    a = NonceAES128().fill()
    b = NonceAES128().fill()
    assert len(a) == 16
    assert a != b


def test_aes_bad_key_length():
    with pytest.raises(ValueError):
        NonceAES128(key=bytes(8))


def test_aes_bad_seed_length():
    with pytest.raises(ValueError):
        NonceAES128(key=KEY, seed=bytes(4))