from catalog_sync.features import FeaturePair, FeatureWriter, collect_pairs, normalize_text

from conftest import rows


RECORD = {
    "attributes": [
        {"name": "Référence produit :", "value": "Réf. fabricant ABC-123"},
        {"name": "Dimensions", "value": "10 × 20  cm"},
        {"name": "Couleur", "value": "Rouge"},
        {"name": "Poids", "value": ""},
    ],
    "json_ld": {
        "raw": {
            "additionalProperty": [
                {"name": "Poids", "value": "2 kg"},
                {"propertyID": "Dimensions", "value": "10 x 20 cm"},
                "ignored",
            ]
        }
    },
}


def test_normalize_text():
    assert normalize_text("  10 × 20 – cm ") == "10 x 20 - cm"
    assert normalize_text(None) == ""
    assert len(normalize_text("x" * 300)) == 255


def test_collect_pairs():
    assert collect_pairs(RECORD) == [
        FeaturePair("Référence produit", "ABC-123", "attributes"),
        FeaturePair("Dimensions", "10 x 20 cm", "attributes"),
        FeaturePair("Poids", "2 kg", "json_ld"),
    ]
    assert collect_pairs({}) == []


def test_features_created_and_linked(make_context, catalog, logger):
    ctx = make_context(RECORD, product_id=10)
    report = FeatureWriter(ctx).run()

    assert report.failures == []
    names = {row["name"] for row in rows(catalog, "feature_lang")}
    assert names == {"Référence produit", "Dimensions", "Poids"}
    assert len(rows(catalog, "feature_lang")) == 6
    assert len(rows(catalog, "feature_shop")) == 6
    assert {row["value"] for row in rows(catalog, "feature_value_lang")} == {"ABC-123", "10 x 20 cm", "2 kg"}
    assert {row["custom"] for row in rows(catalog, "feature_value")} == {0}
    links = rows(catalog, "feature_product")
    assert len(links) == 3
    assert {row["id_product"] for row in links} == {10}
    assert logger.events().count("feature_created") == 3


def test_rerun_reuses_features_and_values(make_context, catalog):
    FeatureWriter(make_context(RECORD, product_id=10)).run()
    FeatureWriter(make_context(RECORD, product_id=10)).run()

    assert len(rows(catalog, "feature")) == 3
    assert len(rows(catalog, "feature_value")) == 3
    assert len(rows(catalog, "feature_product")) == 3


def test_feature_languages_from_settings(make_context, catalog):
    mapping = {"tables": {"feature_lang": {"settings": {"id_langs": [2]}}}}
    record = {"attributes": [{"name": "Poids", "value": "3 kg"}]}
    FeatureWriter(make_context(record, mapping, product_id=10)).run()

    assert [row["id_lang"] for row in rows(catalog, "feature_lang")] == [2]
    assert [row["id_lang"] for row in rows(catalog, "feature_value_lang")] == [2]


def test_missing_tables_are_reported(make_context, catalog):
    catalog.exec_driver_sql("DROP TABLE ps_feature_value")
    report = FeatureWriter(make_context(RECORD, product_id=10)).run()

    [failure] = report.failures
    assert failure.op == "features_tables_missing"
    assert failure.error == "missing_required_tables"
    assert failure.payload["missing"] == ["feature_value"]


def test_no_product_no_work(make_context, catalog):
    report = FeatureWriter(make_context(RECORD)).run()

    assert report.written == 0
    assert rows(catalog, "feature") == []
