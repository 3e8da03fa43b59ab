import base64
import unittest

from django.core.exceptions import ImproperlyConfigured

from payflix.errors import IntegrityError
from payflix.vault import KeyVault


class KeyVaultTests(unittest.TestCase):
    def setUp(self) -> None:
        self.vault = KeyVault(bytes(range(32)))
        self.secret = bytes(range(64))

    def test_round_trip(self):
        blob = self.vault.encrypt(self.secret)
        self.assertEqual(self.vault.decrypt(blob), self.secret)

    def test_nonce_is_fresh_per_call(self):
        self.assertNotEqual(self.vault.encrypt(self.secret), self.vault.encrypt(self.secret))

    def test_layout_is_nonce_tag_ciphertext(self):
        data = base64.b64decode(self.vault.encrypt(self.secret))
        self.assertEqual(len(data), 12 + 16 + len(self.secret))

    def test_corrupted_byte_fails_integrity(self):
        data = bytearray(base64.b64decode(self.vault.encrypt(self.secret)))
        for position in (0, 12, len(data) - 1):
            tampered = bytearray(data)
            tampered[position] ^= 0x01
            with self.subTest(position=position):
                with self.assertRaises(IntegrityError):
                    self.vault.decrypt(base64.b64encode(bytes(tampered)).decode())

    def test_wrong_key_fails_integrity(self):
        blob = self.vault.encrypt(self.secret)
        other = KeyVault(bytes(32))
        with self.assertRaises(IntegrityError):
            other.decrypt(blob)

    def test_malformed_blobs_fail_integrity(self):
        for blob in ('not base64!!', base64.b64encode(b'short').decode()):
            with self.subTest(blob=blob):
                with self.assertRaises(IntegrityError):
                    self.vault.decrypt(blob)

    def test_from_hex_requires_key(self):
        with self.assertRaises(ImproperlyConfigured):
            KeyVault.from_hex('')
        with self.assertRaises(ImproperlyConfigured):
            KeyVault.from_hex('zz' * 32)
        with self.assertRaises(ImproperlyConfigured):
            KeyVault.from_hex('ab' * 16)

    def test_from_hex_accepts_64_hex_chars(self):
        vault = KeyVault.from_hex('6f' * 32)
        self.assertEqual(vault.decrypt(vault.encrypt(b'key')), b'key')
