"""Classification metrics for one epoch's predictions.

Both dimensions (category and risk) are scored independently, one-vs-rest
for every true label that appears in the batch. Macro averages only cover
labels present in the batch, not the full vocabulary.
"""

from dataclasses import dataclass, field


@dataclass
class Prediction:
    """One scored sample."""

    text: str
    predicted_category: str
    predicted_risk: str
    true_category: str
    true_risk: str
    cited_ids: list[str] = field(default_factory=list)

    @property
    def is_correct(self) -> bool:
        return (
            self.predicted_category == self.true_category
            and self.predicted_risk == self.true_risk
        )


@dataclass
class ClassificationMetrics:
    """One-vs-rest metrics for a single label."""

    label: str
    precision: float
    recall: float
    f1: float
    accuracy: float
    true_positives: int
    false_positives: int
    false_negatives: int
    true_negatives: int

    @property
    def support(self) -> int:
        return self.true_positives + self.false_negatives

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "accuracy": self.accuracy,
            "true_positives": self.true_positives,
            "false_positives": self.false_positives,
            "false_negatives": self.false_negatives,
            "true_negatives": self.true_negatives,
            "support": self.support,
        }


@dataclass
class EvaluationResult:
    """Metrics for one epoch."""

    category_f1: float = 0.0
    risk_f1: float = 0.0
    overall_f1: float = 0.0
    accuracy: float = 0.0
    total: int = 0
    correct: int = 0
    category_metrics: dict[str, ClassificationMetrics] = field(default_factory=dict)
    risk_metrics: dict[str, ClassificationMetrics] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "category_f1": self.category_f1,
            "risk_f1": self.risk_f1,
            "overall_f1": self.overall_f1,
            "accuracy": self.accuracy,
            "total": self.total,
            "correct": self.correct,
            "category_metrics": {k: v.to_dict() for k, v in self.category_metrics.items()},
            "risk_metrics": {k: v.to_dict() for k, v in self.risk_metrics.items()},
        }


def _safe_div(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def label_metrics(predicted: list[str], actual: list[str], label: str) -> ClassificationMetrics:
    """Compute one-vs-rest metrics for ``label``."""
    tp = fp = fn = tn = 0
    for p, a in zip(predicted, actual):
        if p == label and a == label:
            tp += 1
        elif p == label:
            fp += 1
        elif a == label:
            fn += 1
        else:
            tn += 1

    precision = _safe_div(tp, tp + fp)
    recall = _safe_div(tp, tp + fn)
    f1 = _safe_div(2 * precision * recall, precision + recall)
    return ClassificationMetrics(
        label=label,
        precision=precision,
        recall=recall,
        f1=f1,
        accuracy=_safe_div(tp + tn, len(actual)),
        true_positives=tp,
        false_positives=fp,
        false_negatives=fn,
        true_negatives=tn,
    )


def per_label_metrics(predicted: list[str], actual: list[str]) -> dict[str, ClassificationMetrics]:
    # dict.fromkeys keeps first-seen order of the true labels
    labels = list(dict.fromkeys(actual))
    return {label: label_metrics(predicted, actual, label) for label in labels}


def macro_f1(metrics: dict[str, ClassificationMetrics]) -> float:
    if not metrics:
        return 0.0
    return sum(m.f1 for m in metrics.values()) / len(metrics)


def evaluate_predictions(predictions: list[Prediction]) -> EvaluationResult:
    """Score a prediction set. An empty set yields all-zero metrics."""
    if not predictions:
        return EvaluationResult()

    category_metrics = per_label_metrics(
        [p.predicted_category for p in predictions],
        [p.true_category for p in predictions],
    )
    risk_metrics = per_label_metrics(
        [p.predicted_risk for p in predictions],
        [p.true_risk for p in predictions],
    )

    category_f1 = macro_f1(category_metrics)
    risk_f1 = macro_f1(risk_metrics)
    correct = sum(1 for p in predictions if p.is_correct)

    return EvaluationResult(
        category_f1=category_f1,
        risk_f1=risk_f1,
        overall_f1=(category_f1 + risk_f1) / 2,
        accuracy=correct / len(predictions),
        total=len(predictions),
        correct=correct,
        category_metrics=category_metrics,
        risk_metrics=risk_metrics,
    )
