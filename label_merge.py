import re
from collections import namedtuple

import pandas as pd

MergeRule = namedtuple('MergeRule', ['pattern', 'replacement'])
MergeRule.__doc__ = """Rewrite labels ending in ``-<pattern>`` to ``replacement``."""

# Metacluster number -> biological group for the 14-cluster CD4 panel
DEFAULT_MERGE_RULES = [
    MergeRule('1', 'Naive'),
    MergeRule('2', 'Naive'),
    MergeRule('3', 'CM'),
    MergeRule('4', 'CM'),
    MergeRule('5', 'CD69-CD103- EM'),
    MergeRule('6', 'CD69-CD103- EM'),
    MergeRule('7', 'CD69+CD103- EM'),
    MergeRule('8', 'CD69+CD103+ TRM'),
    MergeRule('9', 'Treg'),
    MergeRule('10', 'Tfh'),
    MergeRule('11', 'CD69+CD103+ TRM'),
    MergeRule('12', 'Treg'),
    MergeRule('13', 'CD69+CD103- EM'),
    MergeRule('14', 'Tfh'),
]


class LabelMerger:
    """
    Ordered many-to-one rewrite of fine cluster labels.

    Each label is tested against the rules once, in order; the first rule
    whose suffix matches exactly wins. Labels matching nothing pass through
    unchanged. Construction fails if a replacement would itself be matched
    by a rule, which keeps merging idempotent.
    """

    def __init__(self, rules=DEFAULT_MERGE_RULES):
        self.rules = [MergeRule(*rule) for rule in rules]
        seen = set()
        for rule in self.rules:
            if rule.pattern in seen:
                raise ValueError(f"Duplicate merge pattern '-{rule.pattern}'.")
            seen.add(rule.pattern)
        self._regexes = [re.compile(r'-' + re.escape(rule.pattern) + r'\Z')
                         for rule in self.rules]

        for rule in self.rules:
            clash = self._match(rule.replacement)
            if clash is not None:
                raise ValueError(f"Replacement '{rule.replacement}' is itself matched by "
                                 f"pattern '-{clash.pattern}'; merging would not be idempotent.")

    def _match(self, label):
        for regex, rule in zip(self._regexes, self.rules):
            if regex.search(label):
                return rule
        return None

    def merge_label(self, label):
        if not isinstance(label, str):
            return label
        rule = self._match(label)
        return label if rule is None else rule.replacement

    def merge_labels(self, labels):
        """Merges a Series of labels; returns a categorical Series with the same index."""
        labels = pd.Series(labels)
        merged = labels.astype(object).map(self.merge_label)
        return merged.astype('category')

    def mapping(self, labels):
        """``{fine_label: merged_label}`` for the distinct labels given."""
        return {label: self.merge_label(label) for label in pd.unique(pd.Series(labels).dropna())}


_DEFAULT_MERGER = LabelMerger()


def merge_label(label, rules=None):
    merger = _DEFAULT_MERGER if rules is None else LabelMerger(rules)
    return merger.merge_label(label)


def merge_labels(labels, rules=None):
    merger = _DEFAULT_MERGER if rules is None else LabelMerger(rules)
    return merger.merge_labels(labels)
