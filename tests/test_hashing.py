import hashlib
import tempfile
from pathlib import Path
from unittest import TestCase

from PIL import Image

from picshelf.services import hashing


class HashingTests(TestCase):
    def test_file_hash_matches_bytes_hash(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "blob.bin"
            data = b"x" * (3 * 1024 * 1024 + 7)
            path.write_bytes(data)
            self.assertEqual(hashing.content_hash_file(path), hashing.content_hash(data))
            self.assertEqual(hashing.content_hash(data), hashlib.sha256(data).hexdigest())

    def test_perceptual_hash_is_hex_and_stable_across_resizes(self):
        image = Image.new("RGB", (128, 128), (255, 255, 255))
        for x in range(64):
            for y in range(128):
                image.putpixel((x, y), (0, 0, 0))
        small = image.resize((64, 64))

        full_hash = hashing.perceptual_hash(image)
        self.assertEqual(len(full_hash), 16)
        int(full_hash, 16)
        self.assertLessEqual(hashing.hamming_distance(full_hash, hashing.perceptual_hash(small)), 4)

    def test_hamming_distance_counts_differing_bits(self):
        self.assertEqual(hashing.hamming_distance("ff00ff00ff00ff00", "ff00ff00ff00ff00"), 0)
        self.assertEqual(hashing.hamming_distance("ff00ff00ff00ff00", "ff00ff00ff00ff01"), 1)
