"""
jahmm model: an m-state HMM with ZINM emissions fitted by Baum-Welch.

Per state i, the emission parameters are the category probabilities
p[i] = (p_0, p_1, ..., p_r): p_0 goes with the shape parameter a, p_1 with
the control channel and p_2..p_r with the ChIP channels. The ratio
R = p_1 / p_0 is shared by all states, as are a and pi. Baum-Welch
re-estimates the transition matrix and p; a, pi and the (uniform) initial
distribution stay fixed.
"""

import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Union

import numpy as np
from tqdm import tqdm

from jahmm.core.emission import EmissionConfig, OutputMode, index_series, zinm_prob
from jahmm.core.errors import BaumWelchError, RootBracketError, SeedError
from jahmm.core.hmm import block_fwdb, block_viterbi
from jahmm.core.observations import ChIP, invalid_rows
from jahmm.core.rootfind import ROOT_MAXITER, ROOT_TOLERANCE, solve_unit_interval


MAXITER = 500
TOLERANCE = 1e-6

# Largest accepted spread of p_1 / p_0 across states.
RATIO_TOLERANCE = 1e-3


class FitStatus(Enum):
    INITIALIZING = 'initializing'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    FAILED = 'failed'


class TrainingMonitor:
    """Tracks training progress."""
    def __init__(self):
        self.history = []   # log-likelihood per iteration
        self.deltas = []    # largest change of p per iteration


@dataclass
class SeedEstimate:
    """Initial estimate of the marginal distribution of the control channel."""
    a: float
    pi: float = 1.0
    p: float = 0.5
    ok: bool = True


class P0Equation:
    """
    Stationarity condition of the M-step for p_0 in one state.

    With the posterior weights of the state:
        A: mass on rows that are valid and not all zero
        B: mass on all-zero rows
        D: weighted control counts (rows counted in A)
        E: weighted ChIP counts, summed over channels (rows counted in A)
        C: 1 + R

    the optimum satisfies f(p_0) = p_0 + E / (t1 + t2) - 1/C = 0 with
        t1 = (D + a*A) / p_0
        t2 = B * pi * a * p_0^(a-1) / (pi * p_0^a + 1 - pi)
    """

    def __init__(self, a: float, pi: float, A: float, B: float,
                 C: float, D: float, E: float):
        self.a = a
        self.pi = pi
        self.A = A
        self.B = B
        self.C = C
        self.D = D
        self.E = E

    def _terms(self, p0: float):
        a, pi = self.a, self.pi
        zi = pi * p0 ** a + 1 - pi
        t1 = (self.D + a * self.A) / p0
        t2 = self.B * pi * a * p0 ** (a - 1) / zi
        return t1, t2, zi

    def f(self, p0: float) -> float:
        t1, t2, _ = self._terms(p0)
        if t1 + t2 == 0:
            # No posterior mass on this state.
            return float('nan')
        return p0 + self.E / (t1 + t2) - 1.0 / self.C

    def df(self, p0: float) -> float:
        a, pi = self.a, self.pi
        t1, t2, zi = self._terms(p0)
        if t1 + t2 == 0:
            return float('nan')
        sub3a = (1 - pi) * pi * a * (a - 1) * p0 ** (a - 2)
        sub3b = pi ** 2 * a * p0 ** (2 * a - 2)
        t3 = self.B * (sub3a - sub3b) / zi ** 2
        t4 = (self.D + a * self.A) / p0 ** 2
        return 1 - self.E / (t1 + t2) ** 2 * (t3 - t4)

    def normconst(self, p0: float) -> float:
        """Lagrange multiplier: p_j = ystar_j / normconst for the ChIP channels."""
        t1, t2, _ = self._terms(p0)
        return (t1 + t2) / self.C


def update_trans(Q: np.ndarray, trans: np.ndarray) -> np.ndarray:
    """
    Re-estimate the transition matrix from expected transition counts.

    Rows are normalized to sum to 1. A row of counts summing to 0 belongs
    to a state that is never left (or never visited); its previous row in
    Q is kept.
    """
    trans = np.asarray(trans, dtype=np.float64)
    sums = trans.sum(axis=1)
    new_Q = np.array(Q, dtype=np.float64)
    visited = sums > 0
    new_Q[visited] = trans[visited] / sums[visited, np.newaxis]
    return new_Q


class Jahmm:
    """
    HMM with zero-inflated negative multinomial emissions.

    Attributes:
        transmat_: (m, m) transition matrix
        startprob_: (m,) initial distribution (uniform, not trained)
        a_, pi_: shape and zero-inflation parameters
        p_: (m, r+1) category probabilities
        pem_: (n, m) log emission probabilities after fit
        phi_: (n, m) posterior probabilities after fit
        path_: Viterbi path from the last call to predict
        loglik_: log-likelihood of the last EM iteration
        status_: FitStatus of the last fit
    """

    def __init__(self, n_states: int = 2):
        self.n_states = n_states
        self.transmat_: Optional[np.ndarray] = None
        self.startprob_: Optional[np.ndarray] = None
        self.a_: Optional[float] = None
        self.pi_: Optional[float] = None
        self.p_: Optional[np.ndarray] = None

        # Fit artifacts
        self.pem_: Optional[np.ndarray] = None
        self.phi_: Optional[np.ndarray] = None
        self.path_: Optional[np.ndarray] = None
        self.loglik_: Optional[float] = None
        self.status_: Optional[FitStatus] = None
        self.n_iter_: int = 0

        # Training controls
        self.n_iter: int = MAXITER
        self.tol: float = TOLERANCE
        self.root_max_iter: int = ROOT_MAXITER
        self.root_tol: float = ROOT_TOLERANCE
        self.monitor_: Optional[TrainingMonitor] = None

    def set_params(self, Q, a: float, pi: float, p) -> 'Jahmm':
        """Set transitions and emission parameters; resets the initial distribution."""
        m = self.n_states
        Q = np.array(Q, dtype=np.float64)
        p = np.array(p, dtype=np.float64)
        if Q.shape != (m, m):
            raise ValueError(f"Q must have shape {(m, m)}, got {Q.shape}")
        if p.ndim != 2 or p.shape[0] != m or p.shape[1] < 2:
            raise ValueError(f"p must have shape ({m}, r+1) with r >= 1, got {p.shape}")

        with np.errstate(divide='ignore', invalid='ignore'):
            ratios = p[:, 1] / p[:, 0]
        if np.any(~(np.abs(ratios[1:] - ratios[0]) <= RATIO_TOLERANCE)):
            warnings.warn("'p' inconsistent: p[:, 1] / p[:, 0] differs across states")

        self.transmat_ = Q
        self.a_ = float(a)
        self.pi_ = float(pi)
        self.p_ = p
        self.startprob_ = np.full(m, 1.0 / m)
        return self

    def _check_params(self, r: Optional[int] = None):
        if self.transmat_ is None or self.p_ is None:
            raise ValueError("Model parameters are not set; call set_params() first")
        if r is not None and self.p_.shape[1] != r + 1:
            raise ValueError(
                f"Observations have {r} channels but p has {self.p_.shape[1]} categories"
            )

    @staticmethod
    def _as_chip(X, lengths: Optional[Sequence[int]] = None) -> ChIP:
        if isinstance(X, ChIP):
            return X
        return ChIP(X, lengths)

    def _emissions(self, chip: ChIP, index: Optional[np.ndarray] = None,
                   mode: OutputMode = OutputMode.ADAPTIVE) -> np.ndarray:
        config = EmissionConfig(output_mode=mode, suppress_warnings=True)
        return zinm_prob(chip.y, self.a_, self.pi_, self.p_, index=index, config=config)

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def score(self, X, lengths: Optional[Sequence[int]] = None) -> float:
        """Total log-likelihood of the observations (up to state-independent terms)."""
        chip = self._as_chip(X, lengths)
        self._check_params(chip.r)
        pem = self._emissions(chip)
        phi = np.empty_like(pem)
        loglik, _ = block_fwdb(self.transmat_, self.startprob_, pem, phi, chip.sizes)
        return loglik

    def predict_proba(self, X, lengths: Optional[Sequence[int]] = None) -> np.ndarray:
        """
        Posterior probabilities P(state | observations) at each position.

        Returns:
            (n, n_states) array; rows sum to 1 unless the row is missing
            and the filter degenerates.
        """
        chip = self._as_chip(X, lengths)
        self._check_params(chip.r)
        pem = self._emissions(chip)
        phi = np.empty_like(pem)
        block_fwdb(self.transmat_, self.startprob_, pem, phi, chip.sizes)
        return phi

    def predict(self, X, lengths: Optional[Sequence[int]] = None) -> np.ndarray:
        """Most likely state sequence, decoded independently per fragment."""
        chip = self._as_chip(X, lengths)
        self._check_params(chip.r)
        log_pem = self._emissions(chip, mode=OutputMode.LOG)
        with np.errstate(divide='ignore'):
            log_Q = np.log(self.transmat_)
            log_init = np.log(self.startprob_)
        self.path_ = block_viterbi(log_Q, log_init, log_pem, chip.sizes, log_space=True)
        return self.path_

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def _update_p(self, phi: np.ndarray, y_reg: np.ndarray, regular: np.ndarray,
                  zero: np.ndarray, R: float) -> np.ndarray:
        """M-step for the category probabilities of every state."""
        m = self.n_states
        r = y_reg.shape[1]
        C = 1.0 + R
        newp = np.empty((m, r + 1))

        for i in range(m):
            w = phi[regular, i]
            A = w.sum()
            B = phi[zero, i].sum()
            D = w @ y_reg[:, 0]
            ystar = w @ y_reg[:, 1:]
            E = ystar.sum()

            eq = P0Equation(self.a_, self.pi_, A, B, C, D, E)
            p0 = solve_unit_interval(eq.f, eq.df, tol=self.root_tol,
                                     max_iter=self.root_max_iter)

            newp[i, 0] = p0
            newp[i, 1] = p0 * R
            newp[i, 2:] = ystar / eq.normconst(p0)

        return newp

    def fit(self, X, lengths: Optional[Sequence[int]] = None,
            verbose: bool = False, desc: str = "EM") -> 'Jahmm':
        """
        Train the model with the Baum-Welch algorithm.

        Trains the transition matrix and the category probabilities p.
        Stops when no entry of p moves by more than self.tol, or after
        self.n_iter iterations (status stays ITERATING).

        Args:
            X: (n, r) counts or a ChIP instance
            lengths: fragment lengths (ignored if X is a ChIP)
            verbose: Show progress bar for EM iterations
            desc: Description for progress bar

        Returns:
            self

        Raises:
            BaumWelchError: if an M-step cannot bracket its root. The
                parameters are restored to their values before fit.
            ValueError: if self.n_iter is smaller than 1
        """
        chip = self._as_chip(X, lengths)
        y = chip.y
        n, r = y.shape
        m = self.n_states
        self._check_params(r)
        if self.n_iter < 1:
            raise ValueError(f"n_iter must be at least 1, got {self.n_iter}")

        self.status_ = FitStatus.INITIALIZING
        saved_Q = self.transmat_.copy()
        saved_p = self.p_.copy()

        index, i0 = index_series(y)
        init = np.full(m, 1.0 / m)
        self.startprob_ = init
        R = self.p_[0, 1] / self.p_[0, 0]

        zero = index == i0
        regular = ~invalid_rows(y) & ~zero
        y_reg = y[regular].astype(np.float64)

        pem = np.empty((n, m))
        phi = np.empty((n, m))
        trans = np.empty((m, m))
        config = EmissionConfig(output_mode=OutputMode.ADAPTIVE, suppress_warnings=True)

        Q = self.transmat_.copy()
        p = self.p_.copy()
        loglik = float('nan')
        self.monitor_ = TrainingMonitor()

        iterator = range(self.n_iter)
        if verbose:
            iterator = tqdm(iterator, desc=desc, leave=False)

        iteration = -1
        for iteration in iterator:
            self.status_ = FitStatus.ITERATING

            zinm_prob(y, self.a_, self.pi_, p, index=index, config=config, out=pem)
            loglik, _ = block_fwdb(Q, init, pem, phi, chip.sizes, sumtrans=trans)

            Q = update_trans(Q, trans)

            try:
                newp = self._update_p(phi, y_reg, regular, zero, R)
            except RootBracketError as exc:
                self.status_ = FitStatus.FAILED
                self.transmat_ = saved_Q
                self.p_ = saved_p
                self.pem_ = None
                self.phi_ = None
                self.loglik_ = None
                raise BaumWelchError("cannot complete Baum-Welch algorithm") from exc

            maxd = float(np.max(np.abs(newp - p)))
            self.monitor_.history.append(loglik)
            self.monitor_.deltas.append(maxd)

            if verbose and hasattr(iterator, 'set_postfix'):
                iterator.set_postfix({'logprob': f'{loglik:.4e}',
                                      'delta': f'{maxd:.2e}'})

            if maxd < self.tol:
                self.status_ = FitStatus.CONVERGED
                break
            p = newp

        self.transmat_ = Q
        self.p_ = p
        self.loglik_ = loglik
        self.n_iter_ = iteration + 1

        # Final emissions in log space.
        self.pem_ = self._emissions(chip, index=index, mode=OutputMode.LOG)
        self.phi_ = phi

        if verbose:
            print(f"Baum-Welch {self.status_.value} after {self.n_iter_} iterations "
                  f"(log-likelihood = {loglik:.4f})")

        return self

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize model parameters to a dictionary."""
        return {
            'n_states': self.n_states,
            'transmat_': self.transmat_.tolist() if self.transmat_ is not None else None,
            'a_': self.a_,
            'pi_': self.pi_,
            'p_': self.p_.tolist() if self.p_ is not None else None,
            'loglik_': self.loglik_,
            'model_type': 'jahmm_zinm',
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'Jahmm':
        """Deserialize model parameters from a dictionary."""
        model = cls(n_states=d.get('n_states', 2))
        if d.get('transmat_') is not None and d.get('p_') is not None:
            model.set_params(d['transmat_'], d['a_'], d['pi_'], d['p_'])
        model.loglik_ = d.get('loglik_')
        return model


# =============================================================================
# Initialization from an external seeder
# =============================================================================

Seeder = Callable[[np.ndarray], SeedEstimate]


def initial_categories(n_states: int, r: int, p: float) -> np.ndarray:
    """
    Starting category probabilities for each state.

    The shape category gets p, the control and each ChIP channel share
    1 - p; ChIP channels get weight (1 + i) in state i. Rows are then
    normalized, which keeps p_1 / p_0 equal across states.
    """
    base = (1.0 - p) / r
    cats = np.empty((n_states, r + 1))
    for i in range(n_states):
        cats[i, 0] = p
        cats[i, 1] = base
        cats[i, 2:] = base * (1 + i)
    return cats / cats.sum(axis=1, keepdims=True)


def default_transitions(n_states: int, stay: float = 0.9) -> np.ndarray:
    """Transition matrix with 'stay' on the diagonal, the rest spread evenly."""
    if n_states == 1:
        return np.ones((1, 1))
    Q = np.full((n_states, n_states), (1.0 - stay) / (n_states - 1))
    np.fill_diagonal(Q, stay)
    return Q


def seed_model(n_states: int, chip: Union[ChIP, np.ndarray], seeder: Seeder,
               transmat: Optional[np.ndarray] = None) -> Jahmm:
    """
    Build a model whose emission parameters start from an external estimate.

    Args:
        n_states: number of states
        chip: observations (ChIP or (n, r) counts)
        seeder: callable fitting the control channel (missing values
            removed) and returning a SeedEstimate
        transmat: starting transitions (default_transitions if None)

    Raises:
        SeedError: if the seeder reports a failure
    """
    chip = Jahmm._as_chip(chip)
    control = chip.control[chip.control >= 0]
    estimate = seeder(control)
    if estimate is None or not estimate.ok:
        raise SeedError("parameter seeding failed on the control channel")

    if transmat is None:
        transmat = default_transitions(n_states)
    p = initial_categories(n_states, chip.r, estimate.p)

    model = Jahmm(n_states=n_states)
    model.set_params(transmat, estimate.a, estimate.pi, p)
    return model
