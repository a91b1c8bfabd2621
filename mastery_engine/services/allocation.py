"""Allocation policy for practice sessions.

Each mastery level has a weight (questions per competency at that level).
A level bucket's share of the session is weight × number of competencies in
the bucket; shares become integer quotas by the largest-remainder method so
they always add up to the requested number of questions. The weights are
configuration: the defaults favour low-mastery competencies but nothing here
depends on a particular curve.
"""

from fractions import Fraction


class AllocationPolicy:
    def __init__(self, level_weights: dict[int, int]):
        self.level_weights = dict(level_weights)

    def weight(self, level: int) -> int:
        return self.level_weights.get(level, 0)

    def bucket_quotas(self, buckets: dict[int, list[str]], max_questions: int) -> dict[int, int]:
        """Split max_questions across the populated level buckets.

        When every populated bucket has weight 0 the questions are spread
        uniformly over all competencies instead.
        """
        populated = {level: ids for level, ids in buckets.items() if ids}
        if not populated or max_questions <= 0:
            return {}

        shares = {level: self.weight(level) * len(ids) for level, ids in populated.items()}
        if sum(shares.values()) == 0:
            shares = {level: len(ids) for level, ids in populated.items()}
        total = sum(shares.values())

        exact = {level: Fraction(max_questions * share, total) for level, share in shares.items()}
        quotas = {level: int(value) for level, value in exact.items()}
        remaining = max_questions - sum(quotas.values())

        # Largest fractional part first; ties go to the lower level
        order = sorted(exact, key=lambda level: (-(exact[level] - quotas[level]), level))
        for level in order[:remaining]:
            quotas[level] += 1
        return quotas


def spread(quota: int, competency_ids: list[str], available: dict[str, int]) -> dict[str, int]:
    """Deal `quota` questions round-robin over the competencies of one bucket.

    A competency that runs out of questions is skipped and the rest absorb
    its share. The result may sum to less than `quota` when the bucket as a
    whole lacks content; the caller decides what that means.
    """
    allocation = {cid: 0 for cid in competency_ids}
    remaining = quota
    while remaining > 0:
        progressed = False
        for cid in competency_ids:
            if remaining == 0:
                break
            if allocation[cid] < available.get(cid, 0):
                allocation[cid] += 1
                remaining -= 1
                progressed = True
        if not progressed:
            break
    return allocation
