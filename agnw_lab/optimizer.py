"""
Sequential design-of-experiments engine.

Cold start draws space-filling candidates from an in-memory optuna study.
Once enough outcomes exist, a Gaussian process surrogate with fixed
hyperparameters is fitted on the unit-normalized parameter space and the next
experiment is chosen by an upper-confidence-bound acquisition.
"""

import logging
import math
import threading
import warnings
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import optuna
from optuna.distributions import FloatDistribution
from scipy.optimize import minimize
from scipy.stats import qmc
from sklearn.gaussian_process import GaussianProcessRegressor
from sklearn.gaussian_process.kernels import RBF, ConstantKernel

from .config import PARAMETER_SPACE, section
from .data_types import (
    PARAMETER_NAMES,
    ExperimentParameters,
    ExperimentRecord,
    OptimizationSuggestion,
    resolve_metric,
)
from .errors import InsufficientData, InvalidParameter, OptimizationCancelled
from .history import HistoryStore

logger = logging.getLogger(__name__)

optuna.logging.set_verbosity(optuna.logging.WARNING)

FALLBACK_STRATEGIES = ("qmc", "random", None)
# Perturbation radii (unit-cube scale) for candidates around the incumbents
LOCAL_RADII = (0.05, 0.1, 0.2)
N_INCUMBENTS = 3
PREDICTION_Z = 1.96

HistoryLike = Union[HistoryStore, Sequence[ExperimentRecord]]


def suggest_params(trial: optuna.Trial) -> ExperimentParameters:
    return ExperimentParameters(
        **{name: trial.suggest_float(name, *PARAMETER_SPACE[name]) for name in PARAMETER_NAMES}
    )


def _distributions() -> Dict[str, FloatDistribution]:
    return {name: FloatDistribution(*PARAMETER_SPACE[name]) for name in PARAMETER_NAMES}


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OptimizationCancelled("Suggestion request was superseded or cancelled")


class OptimizationEngine:
    def __init__(self, config: Optional[Dict[str, Any]] = None, seed: Optional[int] = None):
        cfg = section("optimizer", config)
        self.seed = seed
        self.min_records = int(cfg["min_records"])
        self.fallback = cfg["fallback"]
        if self.fallback not in FALLBACK_STRATEGIES:
            raise InvalidParameter(
                f"Unknown fallback strategy {self.fallback!r}; expected one of {FALLBACK_STRATEGIES}"
            )
        self.cold_start_confidence = float(cfg["cold_start_confidence"])
        self.cold_start_ceiling = float(cfg["cold_start_ceiling"])
        if not 0.0 <= self.cold_start_confidence <= self.cold_start_ceiling <= 1.0:
            raise InvalidParameter("Expected 0 <= cold_start_confidence <= cold_start_ceiling <= 1")
        self.kappa = float(cfg["kappa"])
        self.length_scale = float(cfg["length_scale"])
        self.noise = float(cfg["noise"])
        self.n_candidates = int(cfg["n_candidates"])
        self.n_local = int(cfg["n_local"])
        self.chunk_size = int(cfg["chunk_size"])

    def suggest_next(
        self,
        history: HistoryLike,
        target_metric: str,
        seed: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> OptimizationSuggestion:
        """
        Propose the next experiment for ``target_metric``.

        Args:
            history: HistoryStore or a sequence of ExperimentRecord (read only)
            target_metric: Outcome metric to maximize (e.g. "aspect_ratio")
            seed: Overrides the engine seed for this call
            cancel_event: When set, the request is abandoned at the next checkpoint

        Returns:
            OptimizationSuggestion with in-bounds parameters and a confidence in [0, 1]

        Raises:
            InvalidParameter: Unknown target metric
            InsufficientData: Empty history and no fallback sampling configured
            OptimizationCancelled: cancel_event was set before the fit finished
        """
        resolve_metric(target_metric)
        seed = self.seed if seed is None else seed
        _check_cancel(cancel_event)

        snapshot = history.all() if isinstance(history, HistoryStore) else tuple(history)
        usable = self._usable(snapshot, target_metric)

        if len(usable) < self.min_records:
            if self.fallback is not None:
                return self._cold_start(usable, target_metric, seed)
            if not usable:
                raise InsufficientData(
                    f"No records with a '{target_metric}' value and no fallback sampling configured"
                )
        return self._fit_and_acquire(usable, target_metric, seed, cancel_event)

    def _usable(
        self, records: Sequence[Any], target_metric: str
    ) -> List[Tuple[ExperimentRecord, float]]:
        usable = []
        for record in records:
            if not isinstance(record, ExperimentRecord):
                logger.warning(f"Skipping history entry of type {type(record).__name__}")
                continue
            value = record.outcome.metric(target_metric)
            if value is None or not math.isfinite(value):
                continue
            usable.append((record, float(value)))
        return usable

    # ---------------------------------------------------------------- cold start

    def _make_sampler(self, seed: Optional[int]) -> optuna.samplers.BaseSampler:
        if self.fallback == "random":
            return optuna.samplers.RandomSampler(seed=seed)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", optuna.exceptions.ExperimentalWarning)
            return optuna.samplers.QMCSampler(
                qmc_type="sobol",
                scramble=True,
                seed=seed,
                warn_independent_sampling=False,
            )

    def _cold_start(
        self,
        usable: List[Tuple[ExperimentRecord, float]],
        target_metric: str,
        seed: Optional[int],
    ) -> OptimizationSuggestion:
        study = optuna.create_study(direction="maximize", sampler=self._make_sampler(seed))
        distributions = _distributions()
        for record, value in usable:
            study.add_trial(
                optuna.trial.create_trial(
                    params=record.parameters.to_dict(),
                    distributions=distributions,
                    value=value,
                )
            )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", optuna.exceptions.ExperimentalWarning)
            trial = study.ask()
            params = suggest_params(trial)

        logger.info(
            f"Cold start ({len(usable)} usable record(s) for {target_metric}): "
            f"{self.fallback} sample, confidence {self.cold_start_confidence:.2f}"
        )
        return OptimizationSuggestion(
            parameters=params,
            target_metric=target_metric,
            confidence=self.cold_start_confidence,
            strategy="cold_start",
            n_records=len(usable),
        )

    # ----------------------------------------------------------------- surrogate

    def _build_model(self) -> GaussianProcessRegressor:
        kernel = ConstantKernel(1.0, constant_value_bounds="fixed") * RBF(
            length_scale=self.length_scale, length_scale_bounds="fixed"
        )
        # Fixed hyperparameters keep posterior variance non-increasing as records arrive
        return GaussianProcessRegressor(
            kernel=kernel, alpha=self.noise, optimizer=None, normalize_y=False
        )

    def _candidates(
        self, X: np.ndarray, y_norm: np.ndarray, rng: np.random.Generator
    ) -> np.ndarray:
        dim = X.shape[1]
        m = max(1, math.ceil(math.log2(max(self.n_candidates, 2))))
        sobol = qmc.Sobol(d=dim, scramble=True, seed=rng)
        pools = [sobol.random_base2(m)]

        incumbents = X[np.argsort(-y_norm, kind="stable")[:N_INCUMBENTS]]
        pools.append(incumbents)
        per_group = max(1, self.n_local // (len(incumbents) * len(LOCAL_RADII)))
        for x in incumbents:
            for radius in LOCAL_RADII:
                pools.append(x + rng.normal(0.0, radius, size=(per_group, dim)))
        return np.clip(np.vstack(pools), 0.0, 1.0)

    def confidence_at(
        self, history: HistoryLike, target_metric: str, params: ExperimentParameters
    ) -> float:
        """
        Confidence the surrogate would report for a suggestion at ``params``.

        Args:
            history: HistoryStore or a sequence of ExperimentRecord (read only)
            target_metric: Outcome metric the surrogate models
            params: Point to evaluate

        Returns:
            Confidence in [0, 1]; the cold-start confidence when nothing is usable
        """
        resolve_metric(target_metric)
        snapshot = history.all() if isinstance(history, HistoryStore) else tuple(history)
        usable = self._usable(snapshot, target_metric)
        if not usable:
            return self.cold_start_confidence
        model, _, _, _, _ = self._fit(usable)
        confidence, _, _ = self._confidence(model, params, len(usable))
        return confidence

    def _fit(
        self, usable: List[Tuple[ExperimentRecord, float]]
    ) -> Tuple[GaussianProcessRegressor, np.ndarray, np.ndarray, float, float]:
        X = np.vstack([record.parameters.to_unit_vector() for record, _ in usable])
        y = np.asarray([value for _, value in usable], dtype=float)
        y_mean = float(y.mean())
        y_std = float(y.std())
        if y_std < 1e-12:
            y_std = 1.0
        y_norm = (y - y_mean) / y_std

        model = self._build_model()
        model.fit(X, y_norm)
        return model, X, y_norm, y_mean, y_std

    def _confidence(
        self, model: GaussianProcessRegressor, params: ExperimentParameters, n_usable: int
    ) -> Tuple[float, float, float]:
        """Returns (confidence, standardized mean, standardized sigma) at ``params``."""
        mu, sigma = model.predict(params.to_unit_vector().reshape(1, -1), return_std=True)
        mu, sigma = float(mu[0]), float(sigma[0])

        prior_sigma = math.sqrt(model.kernel.k1.constant_value)
        confidence = max(self.cold_start_confidence, 1.0 - sigma / prior_sigma)
        confidence = min(max(confidence, 0.0), 1.0)
        if n_usable < self.min_records:
            confidence = min(confidence, self.cold_start_ceiling)
        return confidence, mu, sigma

    def _fit_and_acquire(
        self,
        usable: List[Tuple[ExperimentRecord, float]],
        target_metric: str,
        seed: Optional[int],
        cancel_event: Optional[threading.Event],
    ) -> OptimizationSuggestion:
        model, X, y_norm, y_mean, y_std = self._fit(usable)
        _check_cancel(cancel_event)

        rng = np.random.default_rng(seed)
        candidates = self._candidates(X, y_norm, rng)
        scores = []
        for start in range(0, len(candidates), self.chunk_size):
            _check_cancel(cancel_event)
            mu, sigma = model.predict(candidates[start : start + self.chunk_size], return_std=True)
            scores.append(mu + self.kappa * sigma)
        scores = np.concatenate(scores)
        best_index = int(np.argmax(scores))
        x_best = candidates[best_index]
        _check_cancel(cancel_event)

        def negative_ucb(x: np.ndarray) -> float:
            mu, sigma = model.predict(x.reshape(1, -1), return_std=True)
            return -float(mu[0] + self.kappa * sigma[0])

        result = minimize(
            negative_ucb, x_best, method="L-BFGS-B", bounds=[(0.0, 1.0)] * X.shape[1]
        )
        if result.fun < -scores[best_index]:
            x_best = np.clip(result.x, 0.0, 1.0)

        params = ExperimentParameters.from_unit_vector(x_best)
        confidence, mu, sigma = self._confidence(model, params, len(usable))

        predicted_mean = mu * y_std + y_mean
        half_width = PREDICTION_Z * sigma * y_std
        logger.info(
            f"GP-UCB over {len(usable)} record(s) for {target_metric}: "
            f"predicted {predicted_mean:.2f} ± {half_width:.2f}, confidence {confidence:.2f}"
        )
        return OptimizationSuggestion(
            parameters=params,
            target_metric=target_metric,
            confidence=confidence,
            strategy="gp_ucb",
            n_records=len(usable),
            predicted_mean=predicted_mean,
            predicted_range=(predicted_mean - half_width, predicted_mean + half_width),
        )


class SuggestionWorker:
    """
    Runs model fits off the control thread.

    Only the newest request matters: submitting a new one cancels the request
    still in flight, which then ends with ``OptimizationCancelled``.
    """

    def __init__(self, engine: OptimizationEngine, history: HistoryStore):
        self.engine = engine
        self.history = history
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agnw-optimizer")
        self._lock = threading.Lock()
        self._current: Optional[Tuple[Future, threading.Event]] = None

    def submit(self, target_metric: str, seed: Optional[int] = None) -> Future:
        cancel_event = threading.Event()
        with self._lock:
            self._cancel_current()
            future = self._executor.submit(
                self.engine.suggest_next, self.history, target_metric, seed, cancel_event
            )
            self._current = (future, cancel_event)
        return future

    def _cancel_current(self) -> None:
        if self._current is None:
            return
        future, cancel_event = self._current
        cancel_event.set()
        future.cancel()
        self._current = None

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._cancel_current()
        self._executor.shutdown(wait=wait)
