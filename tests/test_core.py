import math

import numpy as np
import pytest

from scclonecall.filtering import filter_positions
from scclonecall.genotype import (
    genotype_log_posteriors,
    likely_homozygous,
    most_likely_genotype,
    sort_order,
)
from scclonecall.logfact import LOG_FACT_TABLE_SIZE, log_fact
from scclonecall.models import Genotype, PosData
from scclonecall.significance import (
    SIGNIFICANCE_LEVEL,
    error_tail_probability,
    is_significant,
    is_significant_pos,
)


def test_log_fact_table_matches_exact():
    for n in range(LOG_FACT_TABLE_SIZE):
        assert abs(log_fact(n) - math.lgamma(n + 1)) < 1e-9


def test_log_fact_stirling_branch():
    n = 10 * LOG_FACT_TABLE_SIZE
    exact = math.fsum(math.log(i) for i in range(1, n + 1))
    assert abs(log_fact(n) - exact) / exact < 1e-6
    # continuity at the table boundary
    assert abs(log_fact(LOG_FACT_TABLE_SIZE) - math.lgamma(LOG_FACT_TABLE_SIZE + 1)) < 1e-9


def test_log_fact_rejects_negative():
    with pytest.raises(ValueError):
        log_fact(-1)


def test_zero_coverage_is_not_significant():
    assert is_significant([0, 0, 0, 0], 0.01) is False
    pos = PosData(position=3, cell_ids=np.array([], dtype=np.uint16), counts=np.zeros((0, 4)))
    assert is_significant_pos(pos, 0.01) == (False, 0)


@pytest.mark.parametrize("theta", [1e-4, 1e-2, 0.3, 0.9])
@pytest.mark.parametrize("slot", range(4))
def test_pure_homozygous_never_significant(theta, slot):
    counts = [0, 0, 0, 0]
    counts[slot] = 57
    assert is_significant(counts, theta) is False


def test_noise_level_counts_not_significant():
    assert is_significant([99, 1, 0, 0], 0.01) is False
    assert is_significant([990, 5, 3, 2], 0.01) is False


def test_two_group_boundary_case():
    # group A {90,0,0,10} and group B {85,0,0,15}, pooled
    assert is_significant([175, 0, 0, 25], 0.01) is True
    assert is_significant([90, 0, 0, 10], 0.01) is True
    assert is_significant([85, 0, 0, 15], 0.01) is True


def test_two_group_boundary_case_through_filter():
    # cell 0 is the only member of group A, cell 1 of group B
    pos = PosData.from_cell_counts(10, {0: (90, 0, 0, 10), 1: (85, 0, 0, 15)})
    kept, avg = filter_positions([[pos]], [0, 1], [0, 1], "", 0.01, 1)
    assert kept == [[pos]]
    assert avg == 200.0


def test_significant_pos_reports_coverage():
    pos = PosData.from_cell_counts(10, {0: (90, 0, 0, 10), 1: (85, 0, 0, 15)})
    assert is_significant_pos(pos, 0.01) == (True, 200)
    only_first = np.array([True, False])
    assert is_significant_pos(pos, 0.01, cells=only_first) == (True, 100)


def test_error_tail_probability_matches_brute_force():
    n, theta = 30, 0.05
    for k in [0, 1, 3, 8, 30]:
        brute = sum(math.comb(n, i) * theta**i * (1 - theta) ** (n - i) for i in range(k, n + 1))
        assert error_tail_probability(k, n, theta) == pytest.approx(brute, rel=1e-9)
    assert error_tail_probability(31, n, theta) == 0.0


def test_significance_threshold_is_documented_constant():
    # error-level noise (k equal to its expectation) stays well above the level
    assert error_tail_probability(10, 1000, 0.01) > SIGNIFICANCE_LEVEL


@pytest.mark.parametrize("theta", [0.0, 1.0, -0.1, 1.5])
def test_invalid_theta(theta):
    with pytest.raises(ValueError):
        is_significant([10, 0, 0, 0], theta)


def test_base_count_must_have_four_slots():
    with pytest.raises(ValueError):
        is_significant([10, 0, 0], 0.01)
    with pytest.raises(ValueError):
        is_significant([10, -1, 0, 0], 0.01)


def test_likely_homozygous():
    assert likely_homozygous([100, 0, 0, 1], 0.01) == Genotype.AA
    assert likely_homozygous([50, 48, 1, 1], 0.01) is None
    assert likely_homozygous([0, 0, 30, 0], 0.01) == Genotype.GG
    assert likely_homozygous([0, 0, 0, 0], 0.01) is None


def test_sort_order_ties_follow_base_order():
    assert sort_order([5, 5, 0, 0]).tolist() == [0, 1, 2, 3]
    assert sort_order([1, 7, 7, 2]).tolist() == [1, 2, 3, 0]


def test_most_likely_genotype_basic_calls():
    total = [100, 0, 0, 60]
    order = sort_order(total)
    assert most_likely_genotype([10, 0, 0, 0], total, order, False, 1e-3, 0.01) == Genotype.AA
    assert most_likely_genotype([5, 0, 0, 5], total, order, False, 1e-3, 0.01) == Genotype.AT
    assert most_likely_genotype([0, 0, 0, 6], total, order, False, 1e-3, 0.01) == Genotype.TT


def test_most_likely_genotype_ignores_rare_alleles():
    total = [100, 1, 0, 60]
    order = sort_order(total)
    # C is not among the two most frequent pooled alleles
    g = most_likely_genotype([0, 8, 0, 0], total, order, False, 1e-3, 0.01)
    assert g in (Genotype.AA, Genotype.AT, Genotype.TT)


def test_most_likely_genotype_homozygous_shortcut():
    total = [300, 0, 0, 1]
    order = sort_order(total)
    g = most_likely_genotype([3, 0, 0, 3], total, order, True, 0.5, 0.01)
    assert g is not None and g.is_homozygous


def test_most_likely_genotype_coverage_and_empty():
    total = [10, 0, 0, 10]
    order = sort_order(total)
    assert most_likely_genotype([0, 0, 0, 0], total, order, False, 1e-3, 0.01) is None
    assert most_likely_genotype([0, 0, 0, 0], total, order, False, 1e-3, 0.01, with_coverage=True) == (None, 0)
    assert most_likely_genotype([4, 0, 0, 3], total, order, False, 0.5, 0.01, with_coverage=True) == (
        Genotype.AT,
        7,
    )


def test_hetero_prior_monotonicity():
    rng = np.random.default_rng(3)
    priors = [1e-6, 1e-4, 1e-3, 1e-2, 0.1, 0.5, 0.9]
    for _ in range(50):
        counts = rng.integers(0, 15, size=4)
        total = counts + rng.integers(0, 30, size=4)
        order = sort_order(total)
        cands = [Genotype.from_bases(order[0], order[0]), Genotype.from_bases(order[0], order[1])]
        margins = [
            genotype_log_posteriors(counts, cands, h, 0.01)[1] - genotype_log_posteriors(counts, cands, h, 0.01)[0]
            for h in priors
        ]
        assert all(b >= a for a, b in zip(margins, margins[1:]))

        was_het = False
        for h in priors:
            g = most_likely_genotype(counts, total, order, False, h, 0.01)
            if was_het and int(counts.sum()) > 0:
                assert g is not None and not g.is_homozygous
            was_het = was_het or (g is not None and not g.is_homozygous)


def test_genotype_helpers():
    assert Genotype.from_bases(3, 0) == Genotype.AT
    assert Genotype.CG.alleles == (1, 2)
    assert Genotype.TT.is_homozygous
    assert str(Genotype.GT) == "GT"


@pytest.mark.parametrize("theta", [0.0, 1.0, -0.5, 2.0])
def test_genotype_functions_reject_invalid_theta(theta):
    total = [100, 0, 0, 60]
    order = sort_order(total)
    with pytest.raises(ValueError):
        likely_homozygous([10, 0, 0, 1], theta)
    with pytest.raises(ValueError):
        most_likely_genotype([10, 0, 0, 0], total, order, False, 1e-3, theta)


@pytest.mark.parametrize("hetero_prior", [-0.1, 1.5, 2.0])
def test_most_likely_genotype_rejects_invalid_hetero_prior(hetero_prior):
    total = [100, 0, 0, 60]
    order = sort_order(total)
    with pytest.raises(ValueError, match="Heterozygosity prior"):
        most_likely_genotype([10, 0, 0, 0], total, order, False, hetero_prior, 0.01)
