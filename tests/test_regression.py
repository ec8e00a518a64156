from __future__ import annotations

import logging
import tempfile
import threading
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

from dartgl import collapse, io, popgen, sim
from dartgl.errors import CancelledError, DataError, ParameterError
from dartgl.log import set_verbosity


def _genotype_data(blocks: dict, kind: io.DatasetKind = io.DatasetKind.SNP) -> io.GenotypeData:
    """GenotypeData from {population: (n_ind, n_loc) genotype block}."""
    genotypes = np.vstack([np.asarray(b, dtype=np.float32) for b in blocks.values()])
    populations = [pop for pop, b in blocks.items() for _ in range(len(b))]
    return io.GenotypeData(
        sample_ids=[f"ind{i}" for i in range(len(populations))],
        loc_names=[f"L{s}" for s in range(genotypes.shape[1])],
        genotypes=genotypes,
        kind=kind,
        populations=np.asarray(populations, dtype=object),
    )


def _constant(n_ind: int, calls) -> np.ndarray:
    return np.tile(np.asarray(calls, dtype=np.float32), (n_ind, 1))


def _mixed(n_ind: int, n_loc: int) -> np.ndarray:
    # Every population carries all three genotypes at these loci.
    return np.resize(np.array([0.0, 1.0, 2.0], dtype=np.float32), (n_ind, n_loc))


class TestFixedDiffScenarios(unittest.TestCase):
    def test_single_fixed_locus(self) -> None:
        data = _genotype_data({"A": _constant(10, [0]), "B": _constant(10, [2])})
        res = popgen.fixed_diff(data)
        self.assertEqual(res.fd.loc["A", "B"], 1)
        self.assertEqual(res.pcfd.loc["A", "B"], 100)
        self.assertEqual(res.nloc.loc["A", "B"], 1)
        self.assertEqual(res.nobs.loc["A", "B"], 10.0)
        self.assertFalse(res.tested)

    def test_percent_is_proportional(self) -> None:
        a = np.hstack([_constant(10, [0]), _mixed(10, 3)])
        b = np.hstack([_constant(10, [2]), _mixed(10, 3)])
        res = popgen.fixed_diff(_genotype_data({"A": a, "B": b}))
        self.assertEqual(res.fd.loc["B", "A"], 1)
        self.assertEqual(res.nloc.loc["B", "A"], 4)
        self.assertEqual(res.pcfd.loc["B", "A"], 25)

    def test_matrix_layout(self) -> None:
        a = np.hstack([_constant(4, [0, 0]), _mixed(4, 2)])
        b = np.hstack([_constant(5, [2, 0]), _mixed(5, 2)])
        c = np.hstack([_constant(6, [2, 2]), _mixed(6, 2)])
        res = popgen.fixed_diff(_genotype_data({"C": c, "A": a, "B": b}), test=True, reps=50, seed=3)
        self.assertEqual(res.popnames, ["A", "B", "C"])
        for name, frame in res.matrices().items():
            m = frame.to_numpy()
            np.testing.assert_array_equal(m, m.T, err_msg=name)
        np.testing.assert_array_equal(np.diag(res.fd.to_numpy()), 0)
        self.assertTrue(np.isnan(np.diag(res.nloc.to_numpy())).all())
        self.assertTrue(np.isnan(np.diag(res.nobs.to_numpy())).all())
        self.assertEqual(res.fd.loc["A", "C"], 2)
        # Mean sample size averages the two populations.
        self.assertEqual(res.nobs.loc["A", "C"], 5.0)

    def test_missing_population_data_not_compared(self) -> None:
        a = np.array([[0, np.nan], [0, np.nan]])
        b = np.array([[2, 2], [2, 1]])
        res = popgen.fixed_diff(_genotype_data({"A": a, "B": b}))
        self.assertEqual(res.fd.loc["A", "B"], 1)
        self.assertEqual(res.nloc.loc["A", "B"], 1)

    def test_monomorphic_loci_removed_when_stale(self) -> None:
        a = np.hstack([_constant(10, [0, 1]), _mixed(10, 1)])
        b = np.hstack([_constant(10, [2, 1]), _mixed(10, 1)])
        data = _genotype_data({"A": a, "B": b})
        res = popgen.fixed_diff(data)
        self.assertEqual(res.nloc.loc["A", "B"], 2)
        self.assertTrue(res.data.flags.monomorphs)
        kept = popgen.fixed_diff(data, mono_rm=False)
        self.assertEqual(kept.nloc.loc["A", "B"], 3)

    def test_half_tolerance_counts_opposite_sides(self) -> None:
        # A at frequency 0.25 and B at 0.75 on every locus.
        a = np.tile(np.array([[0.0], [1.0]], dtype=np.float32), (5, 4))
        b = np.tile(np.array([[2.0], [1.0]], dtype=np.float32), (5, 4))
        data = _genotype_data({"A": a, "B": b})
        self.assertEqual(popgen.fixed_diff(data, tloc=0.0).fd.loc["A", "B"], 0)
        res = popgen.fixed_diff(data, tloc=0.5)
        self.assertEqual(res.fd.loc["A", "B"], res.nloc.loc["A", "B"])
        self.assertEqual(res.pcfd.loc["A", "B"], 100)

    def test_results_accept_previous_result(self) -> None:
        data = _genotype_data({"A": _constant(10, [0]), "B": _constant(10, [2])})
        first = popgen.fixed_diff(data)
        again = popgen.fixed_diff(first)
        pd.testing.assert_frame_equal(first.fd, again.fd)


class TestFixedDiffErrors(unittest.TestCase):
    def setUp(self) -> None:
        self.data = _genotype_data({"A": _constant(10, [0]), "B": _constant(10, [2])})

    def test_parameters_fail_fast(self) -> None:
        for kwargs in (
            {"tloc": 0.6},
            {"tloc": -0.01},
            {"delta": 1.5},
            {"alpha": -0.1},
            {"reps": 0},
            {"test": "yes"},
        ):
            with self.subTest(**kwargs), self.assertRaises(ParameterError):
                popgen.fixed_diff(self.data, **kwargs)

    def test_wrong_container(self) -> None:
        with self.assertRaises(TypeError):
            popgen.fixed_diff(np.zeros((2, 2)))

    def test_single_population(self) -> None:
        data = _genotype_data({"A": np.vstack([_constant(5, [0]), _constant(5, [2])])})
        with self.assertRaises(DataError):
            popgen.fixed_diff(data)
        with self.assertRaises(DataError):
            popgen.allele_freq_table(data)

    def test_cancel(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(CancelledError):
            popgen.fixed_diff(self.data, cancel=cancel)

    def test_verbosity_range(self) -> None:
        with self.assertRaises(ParameterError):
            set_verbosity(6)


class TestFalsePositives(unittest.TestCase):
    def test_no_intermediate_loci(self) -> None:
        # Three loci fixed on their true frequencies and nothing to simulate.
        n = np.full(4, 10)
        res = sim.simulate_false_positives(
            np.array([0.0, 0.0, 0.0, 0.0]),
            np.array([1.0, 1.0, 1.0, 0.0]),
            n,
            n,
            observed=3,
            reps=1000,
            delta=0.02,
            estimator="observed",
            rng=1,
        )
        self.assertEqual(res.n_candidates, 0)
        self.assertEqual(res.n_true, 3)
        self.assertAlmostEqual(res.expected, 0.0)
        self.assertAlmostEqual(res.sd, 0.0)
        self.assertAlmostEqual(res.pval, 1.0)

    def test_no_information_gives_nan(self) -> None:
        n = np.array([10, 10, 0])
        res = sim.simulate_false_positives(
            np.array([0.0, 1.0, np.nan]),
            np.array([0.0, 1.0, 1.0]),
            n,
            n,
            observed=0,
            estimator="observed",
            rng=0,
        )
        self.assertTrue(np.isnan(res.pval))
        self.assertTrue(np.isnan(res.expected))

    def test_small_samples_produce_false_positives(self) -> None:
        # One alternate allele in 10 sampled: P(sample shows 0) = 0.9 ** 10.
        n = np.full(10, 5)
        res = sim.simulate_false_positives(
            np.full(10, 0.1),
            np.ones(10),
            n,
            n,
            observed=0,
            reps=2000,
            estimator="observed",
            rng=0,
        )
        self.assertEqual(res.n_candidates, 10)
        self.assertAlmostEqual(res.expected, 10 * 0.9**10, delta=0.25)
        self.assertGreater(res.sd, 0.0)
        self.assertEqual(res.pval, 1.0)

    def test_seed_reproducible(self) -> None:
        args = (np.full(6, 0.3), np.full(6, 0.9), np.full(6, 4), np.full(6, 4))
        r1 = sim.simulate_false_positives(*args, observed=2, reps=300, rng=42)
        r2 = sim.simulate_false_positives(*args, observed=2, reps=300, rng=42)
        np.testing.assert_array_equal(r1.spurious, r2.spurious)
        self.assertEqual(r1.pval, r2.pval)

    def test_fixed_diff_with_test(self) -> None:
        data = _genotype_data({"A": _constant(10, [0, 0, 0]), "B": _constant(10, [2, 2, 2])})
        res = popgen.fixed_diff(data, test=True, reps=1000, delta=0.02, seed=11, estimator="observed")
        self.assertEqual(res.fd.loc["A", "B"], 3)
        self.assertEqual(res.expfpos.loc["A", "B"], 0.0)
        self.assertEqual(res.pval.loc["A", "B"], 1.0)

    def test_tiny_samples_simulated_by_default(self) -> None:
        # Two individuals per population: with shrunken frequencies 1/6 and 5/6
        # a locus looks fixed through sampling alone with P = (5/6) ** 8.
        n = np.full(20, 2)
        observed = sim.simulate_false_positives(
            np.zeros(20), np.ones(20), n, n, observed=20, reps=500, estimator="observed", rng=5
        )
        self.assertEqual(observed.n_candidates, 0)
        self.assertEqual(observed.pval, 1.0)
        res = sim.simulate_false_positives(np.zeros(20), np.ones(20), n, n, observed=20, reps=2000, rng=5)
        self.assertEqual(res.n_candidates, 20)
        self.assertEqual(res.n_true, 0)
        self.assertAlmostEqual(res.expected, 20 * (5 / 6) ** 8, delta=0.3)
        self.assertLess(res.pval, 0.05)

    def test_fixed_diff_flags_small_sample_differences(self) -> None:
        a = _constant(2, np.zeros(20))
        b = _constant(2, np.full(20, 2.0))
        res = popgen.fixed_diff(_genotype_data({"A": a, "B": b}), test=True, reps=500, seed=2)
        self.assertEqual(res.fd.loc["A", "B"], 20)
        self.assertGreater(res.expfpos.loc["A", "B"], 1.0)
        self.assertLess(res.pval.loc["A", "B"], 0.05)

    def test_verbosity_does_not_change_statistics(self) -> None:
        a = np.vstack([_constant(3, [0, 1, 0, 2]), _constant(2, [1, 0, 0, 2])])
        b = np.vstack([_constant(3, [2, 1, 1, 0]), _constant(2, [2, 2, 0, 0])])
        data = _genotype_data({"A": a, "B": b})
        root = logging.getLogger("dartgl")
        level = root.level
        try:
            set_verbosity(0)
            quiet = popgen.fixed_diff(data, test=True, reps=200, seed=9)
            set_verbosity(5)
            loud = popgen.fixed_diff(data, test=True, reps=200, seed=9)
        finally:
            root.setLevel(level)
        for name in quiet.matrices():
            pd.testing.assert_frame_equal(quiet.matrices()[name], loud.matrices()[name])


class TestPresenceAbsence(unittest.TestCase):
    PA = io.DatasetKind.PRESENCE_ABSENCE

    def test_single_fixed_tag(self) -> None:
        data = _genotype_data({"A": _constant(10, [0]), "B": _constant(10, [1])}, kind=self.PA)
        res = popgen.fixed_diff(data)
        self.assertEqual(res.fd.loc["A", "B"], 1)
        self.assertEqual(res.pcfd.loc["A", "B"], 100)
        self.assertEqual(res.nobs.loc["A", "B"], 10.0)

    def test_tag_frequency_is_proportion_present(self) -> None:
        data = _genotype_data(
            {"A": _constant(4, [0]), "B": [[1], [1], [1], [0]], "C": [[1], [np.nan], [1], [1]]},
            kind=self.PA,
        )
        aft = popgen.allele_freq_table(data)
        np.testing.assert_allclose(aft.freq[:, 0], [0.0, 0.75, 1.0])
        np.testing.assert_array_equal(aft.nobs[:, 0], [4, 4, 3])
        res = popgen.fixed_diff(data)
        self.assertEqual(res.fd.loc["A", "C"], 1)
        self.assertEqual(res.fd.loc["A", "B"], 0)

    def test_tags_simulated_with_one_draw_per_individual(self) -> None:
        # Half the individuals present: a sample of 4 shows none with P = 0.5 ** 4.
        n = np.full(10, 4)
        kwargs = dict(observed=0, reps=4000, estimator="observed", rng=6)
        tags = sim.simulate_false_positives(np.full(10, 0.5), np.ones(10), n, n, ploidy=1, **kwargs)
        snps = sim.simulate_false_positives(np.full(10, 0.5), np.ones(10), n, n, ploidy=2, **kwargs)
        self.assertAlmostEqual(tags.expected, 10 * 0.5**4, delta=0.08)
        self.assertLess(snps.expected, 0.2)

    def test_fixed_diff_tested_on_tags(self) -> None:
        # Three individuals each; shrunken frequencies 0.2 and 0.8 give P = 0.8 ** 6 per locus.
        data = _genotype_data({"A": _constant(3, np.zeros(5)), "B": _constant(3, np.ones(5))}, kind=self.PA)
        res = popgen.fixed_diff(data, test=True, reps=2000, seed=1)
        self.assertEqual(res.fd.loc["A", "B"], 5)
        self.assertAlmostEqual(res.expfpos.loc["A", "B"], 5 * 0.8**6, delta=0.15)
        self.assertLess(res.pval.loc["A", "B"], 0.05)


class TestCollapse(unittest.TestCase):
    def _three_populations(self) -> io.GenotypeData:
        # A and B identical, C differs from both at five loci.
        return _genotype_data(
            {
                "A": _constant(10, [0, 0, 0, 0, 0]),
                "B": _constant(10, [0, 0, 0, 0, 0]),
                "C": _constant(10, [2, 2, 2, 2, 2]),
            }
        )

    def _chained(self) -> io.GenotypeData:
        # A-B share no fixed difference; after merging, A+ and C share none either.
        return _genotype_data(
            {
                "A": _constant(10, [0, 1]),
                "B": _constant(10, [1, 0]),
                "C": _constant(10, [2, 2]),
            }
        )

    def test_merge_identical_populations(self) -> None:
        res = collapse.collapse(self._three_populations(), tpop=0)
        self.assertEqual(res.outcome, collapse.CollapseOutcome.CONVERGED)
        self.assertEqual(res.rounds, 1)
        self.assertEqual(len(res.history), 2)
        self.assertEqual(res.history[0].groups, [["A", "B"], ["C"]])
        self.assertEqual(res.data.popnames, ["A+", "C"])
        self.assertEqual(res.final.popnames, ["A+", "C"])
        self.assertEqual(res.final.fd.loc["A+", "C"], 5)

    def test_collapse_is_idempotent(self) -> None:
        first = collapse.collapse(self._three_populations())
        second = collapse.collapse(first.data)
        self.assertEqual(second.rounds, 0)
        self.assertEqual(second.outcome, collapse.CollapseOutcome.CONVERGED)
        self.assertEqual(second.data.popnames, first.data.popnames)
        pd.testing.assert_frame_equal(second.final.fd, first.final.fd)

    def test_collapse_to_single_population(self) -> None:
        res = collapse.collapse(self._chained())
        self.assertEqual(res.outcome, collapse.CollapseOutcome.SINGLE_POPULATION)
        self.assertEqual(res.rounds, 2)
        self.assertEqual(res.data.popnames, ["A++"])
        self.assertEqual(len(res.history), 2)
        self.assertIsNone(res.final)

    def test_iteration_cap(self) -> None:
        res = collapse.collapse(self._chained(), max_iter=1)
        self.assertEqual(res.outcome, collapse.CollapseOutcome.ITERATION_CAP)
        self.assertEqual(res.rounds, 1)
        self.assertEqual(res.data.popnames, ["A+", "C"])
        self.assertIsNone(res.history[-1].recode)

    def test_tpop_threshold(self) -> None:
        res = collapse.collapse(self._three_populations(), tpop=5)
        self.assertEqual(res.outcome, collapse.CollapseOutcome.SINGLE_POPULATION)
        with self.assertRaises(ParameterError):
            collapse.collapse(self._three_populations(), tpop=-1)
        with self.assertRaises(ParameterError):
            collapse.collapse(self._three_populations(), max_iter=0)

    def test_nonsignificant_pairs_reported_not_merged(self) -> None:
        # Five individuals per population: the two fixed differences are plausible sampling noise.
        a = np.vstack([_constant(4, [0, 0]), _constant(1, [1, 1])])
        b = _constant(5, [2, 2])
        data = _genotype_data({"A": a, "B": b})
        plain = collapse.collapse(data, tloc=0.1)
        self.assertEqual(plain.rounds, 0)
        self.assertEqual(plain.history[0].nonsignificant, [])
        tested = collapse.collapse(data, tloc=0.1, test=True, reps=500, seed=4, alpha=0.05)
        self.assertEqual(tested.outcome, collapse.CollapseOutcome.CONVERGED)
        self.assertEqual(tested.rounds, 0)
        self.assertEqual(tested.data.popnames, ["A", "B"])
        self.assertGreater(tested.final.pval.loc["A", "B"], 0.05)
        self.assertEqual(tested.history[0].nonsignificant, [("A", "B")])

    def test_tested_collapse_keeps_diagnostic_populations(self) -> None:
        res = collapse.collapse(self._three_populations(), test=True, reps=1000, seed=8)
        self.assertEqual(res.outcome, collapse.CollapseOutcome.CONVERGED)
        self.assertEqual(res.rounds, 1)
        self.assertEqual(res.data.popnames, ["A+", "C"])
        self.assertEqual(res.final.fd.loc["A+", "C"], 5)
        self.assertLess(res.final.pval.loc["A+", "C"], 0.05)
        self.assertEqual(res.history[0].nonsignificant, [])

    def test_collapse_once(self) -> None:
        result = popgen.fixed_diff(self._three_populations())
        data, recode, new_result = collapse.collapse_once(result)
        self.assertEqual(recode.as_dict(), {"A": "A+", "B": "A+", "C": "C"})
        self.assertEqual(new_result.popnames, ["A+", "C"])
        self.assertEqual(data.popnames, ["A+", "C"])

    def test_write_history(self) -> None:
        res = collapse.collapse(self._three_populations())
        with tempfile.TemporaryDirectory() as tmp:
            written = collapse.write_history(res.history, prefix="run", outdir=tmp)
            names = sorted(p.name for p in written)
            fd2 = pd.read_csv(Path(tmp) / "run_fd_2.csv", index_col=0)
            recode = pd.read_csv(Path(tmp) / "run_recode_1.csv")
        self.assertIn("run_pcfd_1.csv", names)
        self.assertIn("run_nloc_2.csv", names)
        self.assertNotIn("run_recode_2.csv", names)
        self.assertEqual(fd2.loc["A+", "C"], 5)
        self.assertEqual(recode["new"].tolist(), ["A+", "A+", "C"])


if __name__ == "__main__":
    unittest.main()
