import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase

from sqlalchemy.exc import IntegrityError

from picshelf.core.db import build_engine, build_sessionmaker, init_db
from picshelf.services.catalog_service import CatalogStore, ImageUpsert, SeriesMetadataUpdate, SeriesUpsert


def _image(series_id: str, name: str, path: str, file_hash: str = "h", phash: str = "p") -> ImageUpsert:
    return ImageUpsert(
        series_id=series_id,
        file_name=name,
        file_path=path,
        file_hash=file_hash,
        perceptual_hash=phash,
        thumbnail="data:image/jpeg;base64,",
    )


class CatalogStoreTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.engine = build_engine(self.base / "catalog.db")
        await init_db(self.engine)
        self.store = CatalogStore(build_sessionmaker(self.engine))

    async def asyncTearDown(self):
        await self.engine.dispose()
        self._tmp.cleanup()

    async def test_series_upsert_keeps_identity_and_rewrites_path(self):
        first = await self.store.upsert_series_by_name("b", "/lib/B/b")
        second = await self.store.upsert_series_by_name("b", "/lib/B/b_agg/b")

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.path, "/lib/B/b_agg/b")
        self.assertEqual(second.created_at, first.created_at)
        items, total = await self.store.list_series(1, 10)
        self.assertEqual(total, 1)

    async def test_image_upsert_resolves_to_update(self):
        series = await self.store.upsert_series_by_name("b", "/lib/B/b")
        await self.store.bulk_write([_image(series.id, "b_001.jpg", "/lib/B/b/b_001.jpg", file_hash="one")])
        original = await self.store.get_image_by_file_path("/lib/B/b/b_001.jpg")

        await self.store.bulk_write([_image(series.id, "b_001.jpg", "/lib/B/b/b_001.jpg", file_hash="two")])

        images = await self.store.get_images_by_series(series.id)
        self.assertEqual(len(images), 1)
        self.assertEqual(images[0].id, original.id)
        self.assertEqual(images[0].file_hash, "two")

    async def test_bulk_write_rolls_back_whole_batch(self):
        a = await self.store.upsert_series_by_name("a", "/lib/A/a")
        b = await self.store.upsert_series_by_name("b", "/lib/B/b")
        await self.store.bulk_write([_image(a.id, "x.jpg", "/shared/x.jpg")])

        with self.assertRaises(IntegrityError):
            await self.store.bulk_write(
                [
                    _image(b.id, "y.jpg", "/lib/B/b/y.jpg"),
                    _image(b.id, "x.jpg", "/shared/x.jpg"),
                ]
            )

        self.assertEqual(await self.store.count_images_by_series(b.id), 0)

    async def test_find_many_by_names_reports_missing(self):
        await self.store.bulk_write([SeriesUpsert(name="one", path="/l/O/one"), SeriesUpsert(name="two", path="/l/T/two")])
        found, missing = await self.store.find_many_by_names(["one", "two", "three", "one"])
        self.assertEqual(sorted(s.name for s in found), ["one", "two"])
        self.assertEqual(missing, ["three"])

    async def test_metadata_and_first_image(self):
        series = await self.store.upsert_series_by_name("s", "/l/S/s")
        await self.store.bulk_write(
            [
                _image(series.id, "b.jpg", "/l/S/s/b.jpg"),
                _image(series.id, "a.jpg", "/l/S/s/a.jpg"),
            ]
        )
        first = await self.store.first_image_by_series(series.id)
        self.assertEqual(first.file_name, "a.jpg")

        complete, expected, actual = await self.store.check_series_completeness(series.id)
        self.assertFalse(complete)
        self.assertEqual((expected, actual), (0, 2))

        await self.store.bulk_write([SeriesMetadataUpdate(series_id=series.id, image_count=2, thumbnail=first.thumbnail)])
        refreshed = await self.store.get_series_by_id(series.id)
        self.assertEqual(refreshed.image_count, 2)
        self.assertEqual((await self.store.check_series_completeness(series.id))[0], True)

    async def test_list_is_sorted_by_path_and_paged(self):
        for name, path in [("c", "/l/C/c"), ("a", "/l/A/a"), ("b", "/l/B/b")]:
            await self.store.upsert_series_by_name(name, path)
        page1, total = await self.store.list_series(1, 2)
        page2, _ = await self.store.list_series(2, 2)
        self.assertEqual(total, 3)
        self.assertEqual([s.name for s in page1], ["a", "b"])
        self.assertEqual([s.name for s in page2], ["c"])

    async def test_search_is_case_insensitive_substring(self):
        await self.store.upsert_series_by_name("Moon Walk", "/l/M/Moon Walk")
        await self.store.upsert_series_by_name("Honeymoon", "/l/H/Honeymoon")
        await self.store.upsert_series_by_name("100%_real", "/l/#/100%_real")

        items, total = await self.store.search_series_by_name("MOON", 1, 10)
        self.assertEqual(total, 2)
        self.assertEqual(items[0].name, "Honeymoon")

        literal, _ = await self.store.search_series_by_name("%_", 1, 10)
        self.assertEqual([s.name for s in literal], ["100%_real"])

    async def test_perceptual_hash_lookup_is_exact(self):
        series = await self.store.upsert_series_by_name("s", "/l/S/s")
        await self.store.bulk_write(
            [
                _image(series.id, "a.jpg", "/l/S/s/a.jpg", phash="ff00ff00ff00ff00"),
                _image(series.id, "b.jpg", "/l/S/s/b.jpg", phash="ff00ff00ff00ff01"),
            ]
        )
        matches = await self.store.find_images_by_perceptual_hash("ff00ff00ff00ff00", 10)
        self.assertEqual([m.file_name for m in matches], ["a.jpg"])

    async def test_find_missing_files(self):
        folder = self.base / "lib" / "S" / "s"
        folder.mkdir(parents=True)
        (folder / "a.jpg").write_bytes(b"a")
        (folder / "b.jpg").write_bytes(b"b")
        series = await self.store.upsert_series_by_name("s", str(folder))
        await self.store.bulk_write([_image(series.id, "a.jpg", str(folder / "a.jpg"))])

        self.assertEqual(await self.store.find_missing_files(series), ["b.jpg"])

        gone = await self.store.upsert_series_by_name("gone", str(self.base / "nowhere"))
        self.assertEqual(await self.store.find_missing_files(gone), [])

    async def test_drop_all_empties_catalog(self):
        series = await self.store.upsert_series_by_name("s", "/l/S/s")
        await self.store.bulk_write([_image(series.id, "a.jpg", "/l/S/s/a.jpg")])

        await self.store.drop_all()

        items, total = await self.store.list_series(1, 10)
        self.assertEqual(total, 0)
        self.assertIsNone(await self.store.get_image_by_file_path("/l/S/s/a.jpg"))
