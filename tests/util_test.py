import hashlib

import pytest

from certpilot import util


def test_fingerprint_ignores_order_and_duplicates():
    a = util.fingerprint(["www.example.org", "example.org"])
    b = util.fingerprint(["example.org", "www.example.org", "example.org", " example.org "])

    assert a == b
    assert len(a) == 8
    assert a == hashlib.md5(b"example.org,www.example.org").hexdigest()[11:19]


def test_fingerprint_differs_per_domain_set():
    assert util.fingerprint(["example.org"]) != util.fingerprint(["example.com"])


@pytest.mark.parametrize(
    "domains, expected",
    [
        (["www.example.com", "example.com", "a.b.example.com"], "example.com"),
        (["b.example.org", "a.example.org"], "a.example.org"),
        (["example.org", "*.example.org"], "*.example.org"),
        (["single.test"], "single.test"),
    ],
)
def test_common_name_for_csr(domains, expected):
    assert util.common_name_for_csr(domains) == expected


def test_common_name_for_csr_empty():
    with pytest.raises(ValueError):
        util.common_name_for_csr([])


LEAF = "-----BEGIN CERTIFICATE-----\nMIIBleaf\n-----END CERTIFICATE-----"
ROOT = "-----BEGIN CERTIFICATE-----\nMIIBroot\n-----END CERTIFICATE-----"


def test_extract_certificate():
    bundle = util.extract_certificate(f"{LEAF}\n\n{ROOT}\n")

    assert bundle.certificate == LEAF
    assert bundle.certificate_full_chained == f"{LEAF}\n{ROOT}"


def test_extract_certificate_without_blocks():
    assert util.extract_certificate("<html>not found</html>") is None


def test_write_private(tmp_path):
    path = tmp_path / "private.pem"
    util.write_private(path, b"secret")
    path.chmod(0o644)
    util.write_private(path, b"rotated")

    assert path.read_bytes() == b"rotated"
    assert path.stat().st_mode & 0o777 == util.KEY_FILE_MODE
