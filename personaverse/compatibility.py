"""Compatibility scoring between two trait vectors.

Pure and symmetric: score(a, b) == score(b, a), always in [0, 1].
"""

from .schemas import TraitVector, clamp

CURIOSITY_WEIGHT = 0.20
SOCIAL_AFFINITY_WEIGHT = 0.30
AGGRESSION_WEIGHT = 0.20
STABILITY_WEIGHT = 0.15
GROWTH_POTENTIAL_WEIGHT = 0.15


def score(a: TraitVector, b: TraitVector) -> float:
    """Weighted compatibility of two personalities.

    Components:
    - curiosity similarity        (1 - |Δ|) x 0.20
    - social-affinity similarity  (1 - |Δ|) x 0.30
    - aggression similarity       (1 - |Δ|) x 0.20
    - mean stability              mean      x 0.15
    - growth-potential similarity (1 - |Δ|) x 0.15

    Each component lies in [0, 1] and the weights sum to 1, so the clamp only
    absorbs floating point drift.
    """
    total = (
        (1.0 - abs(a.curiosity - b.curiosity)) * CURIOSITY_WEIGHT
        + (1.0 - abs(a.social_affinity - b.social_affinity)) * SOCIAL_AFFINITY_WEIGHT
        + (1.0 - abs(a.aggression - b.aggression)) * AGGRESSION_WEIGHT
        + ((a.stability + b.stability) / 2.0) * STABILITY_WEIGHT
        + (1.0 - abs(a.growth_potential - b.growth_potential)) * GROWTH_POTENTIAL_WEIGHT
    )
    return clamp(total, 0.0, 1.0)
