"""
Tests for batch generation, cohort evaluation and the override store.

Run with: python -m pytest backend/measure_engine/services -v
"""

import pytest

from measure_engine.codegen.overrides import new_override
from measure_engine.core.errors import OverrideNotFoundError, UnknownTargetFormatError
from measure_engine.schemas.override import OverrideKey, TargetFormat
from measure_engine.schemas.results import FinalOutcome
from measure_engine.schemas.ums import Measure, MeasureMetadata
from measure_engine.services.batch import evaluate_cohort, generate_many, sql_target_format
from measure_engine.services.override_store import OverrideStore
from measure_engine.testing.fixtures import (
    diabetes_measure,
    hospice_patient,
    numerator_patient,
    uncontrolled_patient,
)


def _key(component_id: str = "obs-hba1c", target_format: TargetFormat = TargetFormat.CQL) -> OverrideKey:
    return OverrideKey(measure_id="CMS122", component_id=component_id, target_format=target_format)


# =============================================================================
# BATCH GENERATION
# =============================================================================

def test_generate_many_isolates_failures():
    broken = Measure(id="broken", metadata=MeasureMetadata(measure_id="broken"))
    results = generate_many([diabetes_measure(), broken], TargetFormat.CQL, max_workers=2)

    assert set(results) == {"CMS122", "broken"}
    assert results["CMS122"].success
    assert "library CMS122" in results["CMS122"].code
    assert not results["broken"].success
    assert results["broken"].code == ""


def test_generate_many_applies_matching_overrides():
    overrides = [
        new_override(_key(target_format=TargetFormat.HDI_SQL), "gen", "patched", "tightened"),
        new_override(_key(target_format=TargetFormat.CQL), "gen", "patched"),
    ]
    results = generate_many([diabetes_measure()], TargetFormat.HDI_SQL, overrides=overrides)
    item = results["CMS122"]
    assert item.override_count == 1
    assert item.code.startswith("-- ")
    assert "HDI SQL OVERRIDES APPLIED: 1" in item.code


def test_generate_many_dialect_format_selects_dialect():
    results = generate_many([diabetes_measure()], TargetFormat.SYNAPSE_SQL, dialect="hdi")
    assert "@population_id" in results["CMS122"].code


def test_generate_many_records_unknown_dialect_per_item():
    results = generate_many([diabetes_measure()], TargetFormat.SQL, dialect="oracle")
    item = results["CMS122"]
    assert not item.success
    assert "Unknown SQL dialect 'oracle'" in item.errors[0]


def test_generate_many_rejects_unknown_format():
    with pytest.raises(UnknownTargetFormatError):
        generate_many([diabetes_measure()], "xml")


def test_sql_target_format():
    assert sql_target_format("hdi") == TargetFormat.HDI_SQL
    assert sql_target_format("synapse") == TargetFormat.SYNAPSE_SQL
    assert sql_target_format("oracle") == TargetFormat.SQL


# =============================================================================
# COHORT EVALUATION
# =============================================================================

def test_evaluate_cohort_keyed_by_patient():
    patients = [numerator_patient(), uncontrolled_patient(), hospice_patient()]
    results = evaluate_cohort(patients, diabetes_measure(), max_workers=3)

    outcomes = {pid: item.trace.final_outcome for pid, item in results.items()}
    assert outcomes == {
        "p-num": FinalOutcome.IN_NUMERATOR,
        "p-uncontrolled": FinalOutcome.NOT_IN_NUMERATOR,
        "p-hospice": FinalOutcome.EXCLUDED,
    }
    assert all(item.error is None for item in results.values())


# =============================================================================
# OVERRIDE STORE
# =============================================================================

def test_store_record_edit_appends_notes():
    store = OverrideStore()
    store.record_edit(_key(), "generated", "patch 1", comment="first")
    updated = store.record_edit(_key(), "ignored", "patch 2", comment="second", change_type="threshold")

    assert updated.generated_snippet == "generated"
    assert updated.patched_snippet == "patch 2"
    assert [n.comment for n in updated.notes] == ["first", "second"]
    assert store.get(_key()) == updated


def test_store_snapshot_filters_by_measure_and_format():
    store = OverrideStore()
    store.record_edit(_key("a"), "g", "p")
    store.record_edit(_key("b", TargetFormat.HDI_SQL), "g", "p")
    store.record_edit(OverrideKey(measure_id="CMS165", component_id="a", target_format=TargetFormat.CQL), "g", "p")

    assert len(store.snapshot("CMS122")) == 2
    assert [o.key.component_id for o in store.snapshot("CMS122", TargetFormat.CQL)] == ["a"]


def test_store_revert():
    store = OverrideStore()
    store.record_edit(_key(), "g", "p")
    removed = store.revert(_key())
    assert removed.patched_snippet == "p"
    assert store.get(_key()) is None
    with pytest.raises(OverrideNotFoundError):
        store.revert(_key())
