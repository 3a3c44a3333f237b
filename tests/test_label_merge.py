import numpy as np
import pandas as pd
import pytest

from label_merge import DEFAULT_MERGE_RULES, LabelMerger, MergeRule, merge_label, merge_labels


@pytest.mark.parametrize("fine, merged", [
    ("CD4-1", "Naive"),
    ("CD4-13", "CD69+CD103- EM"),
    ("CD4-99", "CD4-99"),
    ("CD4-11", "CD69+CD103+ TRM"),
])
def test_merge_examples(fine, merged):
    assert merge_label(fine) == merged


def test_suffix_match_is_exact():
    # "-1" must not fire on "-11" or "-13"
    merger = LabelMerger([MergeRule('1', 'One')])
    assert merger.merge_label("CD4-1") == "One"
    assert merger.merge_label("CD4-11") == "CD4-11"
    assert merger.merge_label("CD4-13") == "CD4-13"
    assert merger.merge_label("CD4-1x") == "CD4-1x"


def test_merge_is_idempotent_for_every_default_label():
    labels = [f"CD4-{k}" for k in range(1, 20)] + ["Naive", "Treg", "something"]
    for label in labels:
        once = merge_label(label)
        assert merge_label(once) == once


def test_first_matching_rule_wins():
    merger = LabelMerger([MergeRule('3', 'first'), MergeRule('B-3', 'second')])
    assert merger.merge_label("X-B-3") == "first"


def test_rules_whose_output_would_be_rewritten_are_rejected():
    with pytest.raises(ValueError, match="idempotent"):
        LabelMerger([MergeRule('1', 'Naive-2'), MergeRule('2', 'Memory')])


def test_duplicate_patterns_are_rejected():
    with pytest.raises(ValueError, match="Duplicate"):
        LabelMerger([MergeRule('1', 'A'), MergeRule('1', 'B')])


def test_merge_labels_series_keeps_index_and_missing_values():
    labels = pd.Series(pd.Categorical(["CD4-1", "CD4-13", None, "CD4-99"]), index=[5, 6, 7, 8])

    merged = merge_labels(labels)

    assert list(merged.index) == [5, 6, 7, 8]
    assert merged.dtype.name == "category"
    assert merged[5] == "Naive"
    assert merged[6] == "CD69+CD103- EM"
    assert pd.isna(merged[7])
    assert merged[8] == "CD4-99"


def test_default_rules_cover_fourteen_metaclusters():
    assert len(DEFAULT_MERGE_RULES) == 14
    merged = {merge_label(f"CD4-{k}") for k in range(1, 15)}
    assert merged == {"Naive", "CM", "CD69-CD103- EM", "CD69+CD103- EM",
                      "CD69+CD103+ TRM", "Treg", "Tfh"}


def test_non_string_labels_pass_through():
    assert merge_label(3) == 3
    assert np.isnan(merge_label(np.nan))


def test_custom_rules_as_plain_tuples():
    assert merge_labels(["X-2", "X-3"], rules=[("2", "two")]).tolist() == ["two", "X-3"]
