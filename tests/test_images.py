from pathlib import Path

import pytest

from catalog_sync import http_utils
from catalog_sync.images import ImagePipeline, image_folder, image_urls

from conftest import FakeSession, rows


JPEG_A = b"\xff\xd8\xff\xe0 first image"
JPEG_B = b"\xff\xd8\xff\xe0 second image"

URL_A = "https://cdn.example/img/a.jpg"
URL_B = "https://cdn.example/img/b.png"
URL_A_COPY = "https://cdn.example/img/a-large"


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(http_utils.time, "sleep", lambda *_: None)


def _pipeline(ctx, session, store, tmp_path, image_dir="img"):
    return ImagePipeline(
        ctx,
        session,
        store,
        staging_root=str(tmp_path / "staging"),
        image_dir=str(tmp_path / image_dir) if image_dir else None,
        retries=0,
        backoff=0,
    )


def _session():
    return FakeSession({URL_A: (200, JPEG_A), URL_B: (200, JPEG_B), URL_A_COPY: (200, JPEG_A)})


def test_image_urls_and_folder():
    record = {
        "image": URL_B,
        "images": [URL_A, {"url": URL_B}, {"url": " "}, None],
        "json_ld": {"raw": {"image": [{"url": URL_A_COPY}, 5]}},
    }
    assert image_urls(record) == [URL_B, URL_A, URL_A_COPY]
    assert image_urls({}) == []
    assert image_folder(123) == Path("1", "2", "3")


def test_images_stored_and_linked(make_context, catalog, store, logger, tmp_path):
    session = _session()
    ctx = make_context({"title": "Widget", "images": [URL_A, {"url": URL_B}, URL_A_COPY]}, product_id=10)
    report = _pipeline(ctx, session, store, tmp_path).run()

    assert report.failures == []
    images = rows(catalog, "image", order_by="id_image")
    assert [(row["id_product"], row["position"], row["cover"]) for row in images] == [(10, 1, 1), (10, 2, None)]
    first, second = (row["id_image"] for row in images)
    assert (tmp_path / "img" / image_folder(first) / f"{first}.jpg").read_bytes() == JPEG_A
    assert (tmp_path / "img" / image_folder(second) / f"{second}.jpg").read_bytes() == JPEG_B

    shop_rows = rows(catalog, "image_shop", order_by="id_image, id_shop")
    assert [(row["id_image"], row["id_shop"], row["cover"]) for row in shop_rows] == [
        (first, 1, 1),
        (first, 2, 1),
        (second, 1, None),
        (second, 2, None),
    ]
    assert {row["id_product"] for row in shop_rows} == {10}
    lang_rows = rows(catalog, "image_lang")
    assert len(lang_rows) == 4
    assert {row["legend"] for row in lang_rows} == {"Widget"}

    assert "image_skip_dupcontent" in logger.events()
    assert session.calls[0][1]["headers"]["Referer"] == "https://shop.example/p/1"


def test_rerun_reuses_known_images(make_context, catalog, store, logger, tmp_path):
    record = {"title": "Widget", "images": [URL_A, URL_B]}
    _pipeline(make_context(record, product_id=10), _session(), store, tmp_path).run()
    report = _pipeline(make_context(record, product_id=10), _session(), store, tmp_path).run()

    assert report.failures == []
    assert len(rows(catalog, "image")) == 2
    assert len(rows(catalog, "image_shop")) == 4
    assert len(rows(catalog, "image_lang")) == 4
    assert logger.events().count("image_reuse") == 2


def test_existing_cover_is_kept(make_context, catalog, store, tmp_path):
    catalog.exec_driver_sql("INSERT INTO ps_image (id_image, id_product, position, cover) VALUES (50, 10, 1, 1)")
    catalog.exec_driver_sql("INSERT INTO ps_image_shop (id_image, id_shop, id_product, cover) VALUES (50, 1, 10, 1)")

    report = _pipeline(make_context({"images": [URL_A]}, product_id=10), _session(), store, tmp_path).run()

    assert report.failures == []
    new = [row for row in rows(catalog, "image") if row["id_image"] != 50]
    assert [(row["position"], row["cover"]) for row in new] == [(2, None)]
    shop_rows = rows(catalog, "image_shop", order_by="id_shop")
    assert [(row["id_shop"], row["cover"]) for row in shop_rows if row["id_image"] != 50] == [(1, None), (2, 1)]


def test_mapped_legend_is_truncated(make_context, catalog, store, tmp_path):
    mapping = {"tables": {"image_lang": {"fields": {"legend": "product.name"}}}}
    record = {"product": {"name": "A rather long image legend"}, "images": [URL_A]}
    report = _pipeline(make_context(record, mapping, product_id=10), _session(), store, tmp_path).run()

    notes = [failure for failure in report.failures if failure.op == "truncate"]
    assert len(notes) == 2
    assert notes[0].payload["column"] == "legend"
    assert {row["legend"] for row in rows(catalog, "image_lang")} == {"A rather long im"}


def test_failed_download_does_not_stop_the_others(make_context, catalog, store, tmp_path):
    missing = "https://cdn.example/img/gone.jpg"
    ctx = make_context({"images": [missing, URL_B]}, product_id=10)
    report = _pipeline(ctx, _session(), store, tmp_path).run()

    [failure] = report.failures
    assert failure.table == "ps_image"
    assert failure.op == "download"
    assert failure.payload["url"] == missing
    [image] = rows(catalog, "image")
    assert image["cover"] is None


def test_missing_image_dir_skips(make_context, catalog, store, tmp_path):
    report = _pipeline(make_context({"images": [URL_A]}, product_id=10), _session(), store, tmp_path, None).run()

    [failure] = report.failures
    assert failure.error == "image_skip_no_dir"
    assert failure.payload == {"count": 1}
    assert rows(catalog, "image") == []


def test_download_disabled_by_settings(make_context, catalog, store, logger, tmp_path):
    mapping = {"tables": {"image": {"settings": {"download": False}}}}
    session = _session()
    report = _pipeline(make_context({"images": [URL_A]}, mapping, product_id=10), session, store, tmp_path).run()

    assert report.failures == []
    assert session.calls == []
    assert "image_download_disabled" in logger.events()
    assert rows(catalog, "image") == []
