from __future__ import annotations

from .models import LocationSample


# Satellite and assisted fixes land between a few meters and ~150 m.
# WiFi / cell-tower estimates are typically 300-2000 m.
MAX_ACCEPTABLE_ACCURACY_M = 150.0


def accept_sample(sample: LocationSample, max_accuracy_m: float = MAX_ACCEPTABLE_ACCURACY_M) -> bool:
    """Return False for fixes whose reported accuracy is worse than the threshold.

    A missing accuracy estimate is accepted.
    """

    accuracy = sample.accuracy_m
    if accuracy is None:
        return True
    return accuracy <= max_accuracy_m
