"""
Robust joint refinement of intrinsics and frame poses.

Levenberg-Marquardt over the shared intrinsics and one 6-dof pose per
frame. The normal equations have an arrow structure (dense intrinsic block,
block-diagonal 6x6 pose blocks); pose blocks are eliminated with a Schur
complement and the reduced intrinsic system is solved by Cholesky.

A small state machine drives the solve:

    INITIALIZING -> REFINING <-> REJECTING_OUTLIERS
    REFINING -> CONVERGED | STOPPED | FAILED
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

import numpy as np
from numba import jit
from scipy.linalg import cho_factor, cho_solve

from .. import jet
from ..camera import in_domain, project_raw
from ..config import CalibrationConfig
from ..errors import InsufficientFrames, SingularLinearSystem
from ..geometry import apply_pose_increment, compose_increment, stack_poses
from ..logger import get
from ..types import (
    CalibrationProblem,
    CalibrationResult,
    FramePose,
    RefinementStatus,
    RefinerState,
    compute_reprojection_stats,
)
from .loss import make_loss
from .outliers import select_outliers
from .parameters import IntrinsicsLayout
from .pnp import MIN_PNP_POINTS, refresh_poses

logger = get(__name__)

POSE_DOF = 6
DAMPING_FLOOR = 1e-6
DAMPING_UP = 10.0
DAMPING_DOWN = 1.0 / 3.0


# ============================================================================
# Block accumulation
# ============================================================================


@jit(nopython=True, cache=True)
def _accumulate_blocks(
    frame_index: np.ndarray,
    jac: np.ndarray,
    res: np.ndarray,
    weights: np.ndarray,
    n_frames: int,
    n_int: int,
):
    """
    Accumulate J'WJ and J'Wr by block.

    Args:
        frame_index: (n,) frame of each residual
        jac: (n, 2, n_int + 6) d(residual)/d(intrinsics, pose increment)
        res: (n, 2) residuals
        weights: (n,) IRLS weights, 0 for residuals to ignore
        n_frames: Number of frames
        n_int: Number of free intrinsic parameters

    Returns:
        (U, W, V, g_int, g_pose) with U (n_int, n_int), W (F, n_int, 6),
        V (F, 6, 6), g_int (n_int,), g_pose (F, 6)
    """
    U = np.zeros((n_int, n_int))
    W = np.zeros((n_frames, n_int, 6))
    V = np.zeros((n_frames, 6, 6))
    g_int = np.zeros(n_int)
    g_pose = np.zeros((n_frames, 6))

    for k in range(jac.shape[0]):
        w = weights[k]
        if w == 0.0:
            continue
        f = frame_index[k]
        for row in range(2):
            r = res[k, row]
            for a in range(n_int):
                ja = jac[k, row, a] * w
                g_int[a] += ja * r
                for b in range(a, n_int):
                    U[a, b] += ja * jac[k, row, b]
                for b in range(6):
                    W[f, a, b] += ja * jac[k, row, n_int + b]
            for a in range(6):
                ja = jac[k, row, n_int + a] * w
                g_pose[f, a] += ja * r
                for b in range(a, 6):
                    V[f, a, b] += ja * jac[k, row, n_int + b]

    for a in range(n_int):
        for b in range(a + 1, n_int):
            U[b, a] = U[a, b]
    for f in range(n_frames):
        for a in range(6):
            for b in range(a + 1, 6):
                V[f, b, a] = V[f, a, b]

    return U, W, V, g_int, g_pose


def solve_schur(
    U: np.ndarray,
    W: np.ndarray,
    V: np.ndarray,
    g_int: np.ndarray,
    g_pose: np.ndarray,
    damping: float,
    observed: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Solve the damped normal equations (H + mu D) delta = -g by eliminating
    the pose blocks.

    Args:
        observed: (F,) bool, frames contributing residuals; other frames
            get a zero step

    Returns:
        (intrinsic step (n_int,), pose steps (F, 6))

    Raises:
        np.linalg.LinAlgError: Reduced system not positive definite
    """
    n_int = U.shape[0]
    eye6 = np.eye(POSE_DOF)

    diag_v = np.maximum(np.diagonal(V, axis1=1, axis2=2), DAMPING_FLOOR)
    V_damped = V + damping * diag_v[:, :, None] * eye6
    V_damped[~observed] = eye6
    g_pose = np.where(observed[:, None], g_pose, 0.0)
    V_inv = np.linalg.inv(V_damped)

    if n_int == 0:
        d_pose = -np.einsum("fij,fj->fi", V_inv, g_pose)
        return np.zeros(0), d_pose

    diag_u = np.maximum(np.diag(U), DAMPING_FLOOR)
    U_damped = U + damping * np.diag(diag_u)

    W = np.where(observed[:, None, None], W, 0.0)
    WV_inv = np.einsum("fik,fkj->fij", W, V_inv)
    S = U_damped - np.einsum("fik,fjk->ij", WV_inv, W)
    b = -g_int + np.einsum("fik,fk->i", WV_inv, g_pose)

    d_int = cho_solve(cho_factor(S), b)
    rhs = -g_pose - np.einsum("fij,i->fj", W, d_int)
    d_pose = np.einsum("fij,fj->fi", V_inv, rhs)
    if not (np.all(np.isfinite(d_int)) and np.all(np.isfinite(d_pose))):
        raise np.linalg.LinAlgError("non-finite step")
    return d_int, d_pose


# ============================================================================
# Residual evaluation
# ============================================================================


@dataclass
class _Evaluation:
    indices: np.ndarray  # (n,) correspondence indices evaluated
    residuals: np.ndarray  # (n, 2), zero where invalid
    valid: np.ndarray  # (n,) inside the model domain
    sq_norms: np.ndarray  # (n,)
    cost: float
    jacobian: np.ndarray | None = None  # (n, 2, n_free + 6)

    @property
    def n_valid(self) -> int:
        return int(self.valid.sum())


class RobustRefiner:
    """
    Joint LM refiner with outlier rejection. Mutates problem.model,
    problem.poses, problem.active and problem.frozen_frames.
    """

    def __init__(self, problem: CalibrationProblem, config: CalibrationConfig):
        self.problem = problem
        self.config = config
        self.policy = config.outliers
        self.loss = make_loss(config.loss, config.loss_scale)
        self.state = RefinerState.INITIALIZING
        self.transitions: Counter = Counter()
        self.cost_history: list[float] = []
        self.iterations = 0
        self.rejection_rounds = 0
        self._pending_convergence = False
        self.damping = config.initial_damping

        self.layout = IntrinsicsLayout(
            problem.model,
            shared_focal=config.shared_focal,
            fix_focal=config.fixed_focal is not None,
            disabled_distortions=config.disabled_distortions,
        )
        params = problem.model.params.copy()
        if config.fixed_focal is not None:
            params[0] = params[1] = config.fixed_focal
        self.params = self.layout.prepare(params)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, state: RefinerState) -> None:
        self.transitions[f"{self.state.name}->{state.name}"] += 1
        logger.debug(f"{self.state.name} -> {state.name}")
        self.state = state

    def _fail(self, error: Exception) -> None:
        self._transition(RefinerState.FAILED)
        raise error

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        params: np.ndarray,
        poses: list[FramePose],
        mask: np.ndarray,
        with_jacobian: bool = False,
    ) -> _Evaluation:
        problem = self.problem
        indices = np.flatnonzero(mask)
        frames = problem.frame_index[indices]
        rotations, translations = stack_poses(poses)
        rotated = np.einsum("nij,nj->ni", rotations[frames], problem.obj_points[indices])
        shifted = translations[frames]
        variant = problem.model.variant

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            if with_jacobian:
                total = self.layout.n_free + POSE_DOF
                seeded = self.layout.seed(params, total)
                dw = jet.seed(np.zeros(3), total, offset=self.layout.n_free)
                dt = jet.seed(np.zeros(3), total, offset=self.layout.n_free + 3)
                x, y, z = apply_pose_increment(rotated, shifted, dw, dt)
                u, v = project_raw(variant, seeded, x, y, z)
                # residual = observed - projected
                jacobian = -np.stack(
                    [jet.derivative(u, total), jet.derivative(v, total)], axis=1
                )
                x, y, z = jet.value(x), jet.value(y), jet.value(z)
                u, v = jet.value(u), jet.value(v)
            else:
                jacobian = None
                camera = rotated + shifted
                x, y, z = camera[:, 0], camera[:, 1], camera[:, 2]
                u, v = project_raw(variant, params, x, y, z)

        projected = np.column_stack([u, v])
        valid = in_domain(variant, params, x, y, z) & np.all(np.isfinite(projected), axis=1)
        residuals = problem.img_points[indices] - projected
        residuals[~valid] = 0.0
        if jacobian is not None:
            valid &= np.all(np.isfinite(jacobian), axis=(1, 2))
            jacobian[~valid] = 0.0
            residuals[~valid] = 0.0

        sq_norms = np.sum(residuals * residuals, axis=1)
        cost = 0.5 * float(np.sum(self.loss.rho(sq_norms[valid])))
        return _Evaluation(
            indices=indices,
            residuals=residuals,
            valid=valid,
            sq_norms=sq_norms,
            cost=cost,
            jacobian=jacobian,
        )

    def _frame_cost(self, params: np.ndarray, pose: FramePose, frame: int) -> float:
        problem = self.problem
        mask = problem.frame_mask(frame) & problem.active
        poses = [pose] * problem.n_frames
        return self._evaluate(params, poses, mask).cost

    def _usable_frames(self) -> list[int]:
        counts = self.problem.active_counts()
        return [
            f for f in range(self.problem.n_frames)
            if f not in self.problem.frozen_frames and counts[f] >= MIN_PNP_POINTS
        ]

    def _freeze_sparse_frames(self) -> None:
        counts = self.problem.active_counts()
        for f in range(self.problem.n_frames):
            if counts[f] < MIN_PNP_POINTS and f not in self.problem.frozen_frames:
                logger.info(f"Frame {f}: {counts[f]} active correspondences, freezing")
                self.problem.frozen_frames.add(f)

    def _check_frames(self) -> None:
        usable = len(self._usable_frames())
        if usable < self.config.min_frames:
            self._fail(
                InsufficientFrames(usable, self.config.min_frames, "usable frames in refinement")
            )

    # ------------------------------------------------------------------
    # LM iteration
    # ------------------------------------------------------------------

    def _iterate(self, current: _Evaluation) -> tuple[_Evaluation | None, float]:
        """
        One LM iteration: linearize, then raise damping until a step is
        accepted or the damping limit is hit.

        Returns:
            (accepted evaluation or None, step norm)
        """
        problem = self.problem
        config = self.config
        mask = problem.usable_mask()
        lin = self._evaluate(self.params, problem.poses, mask, with_jacobian=True)

        weights = np.where(lin.valid, self.loss.weight(lin.sq_norms), 0.0)
        frames = problem.frame_index[lin.indices]
        n_free = self.layout.n_free
        U, W, V, g_int, g_pose = _accumulate_blocks(
            np.ascontiguousarray(frames, dtype=np.int64),
            np.ascontiguousarray(lin.jacobian),
            np.ascontiguousarray(lin.residuals),
            np.ascontiguousarray(weights, dtype=np.float64),
            problem.n_frames,
            n_free,
        )
        observed = np.bincount(frames[lin.valid], minlength=problem.n_frames) > 0

        solved_any = False
        while self.damping <= config.max_damping:
            try:
                d_int, d_pose = solve_schur(U, W, V, g_int, g_pose, self.damping, observed)
            except np.linalg.LinAlgError:
                self.damping *= DAMPING_UP
                continue
            solved_any = True

            params = self.layout.apply(self.params, d_int)
            poses = [
                compose_increment(pose, d_pose[f]) if observed[f] else pose
                for f, pose in enumerate(problem.poses)
            ]
            trial = self._evaluate(params, poses, mask)
            step_norm = float(np.sqrt(np.sum(d_int**2) + np.sum(d_pose**2)))

            if trial.cost < current.cost and trial.n_valid >= current.n_valid:
                self.params = params
                problem.poses[:] = poses
                self.damping = max(self.damping * DAMPING_DOWN, 1e-12)
                return trial, step_norm

            logger.debug(
                f"Step rejected (cost {trial.cost:.6g} >= {current.cost:.6g}, "
                f"damping {self.damping:.3g})"
            )
            self.damping *= DAMPING_UP

        if not solved_any:
            self._fail(
                SingularLinearSystem(
                    f"normal equations singular up to damping {config.max_damping:g}"
                )
            )
        return None, 0.0

    # ------------------------------------------------------------------
    # Outlier rejection
    # ------------------------------------------------------------------

    def _reject_outliers(self) -> int:
        problem = self.problem
        mask = problem.usable_mask()
        evaluation = self._evaluate(self.params, problem.poses, mask)

        norms = np.full(problem.n_correspondences, np.nan)
        valid_idx = evaluation.indices[evaluation.valid]
        norms[valid_idx] = np.sqrt(evaluation.sq_norms[evaluation.valid])

        before = problem.active_counts()
        outliers, threshold = select_outliers(
            self.policy, norms, mask, self.rejection_rounds
        )
        self.rejection_rounds += 1
        if outliers.size == 0:
            logger.debug(f"Rejection round {self.rejection_rounds}: none above {threshold:.3f}px")
            return 0

        problem.deactivate(outliers)
        logger.info(
            f"Rejection round {self.rejection_rounds}: {outliers.size} correspondences "
            f"above {threshold:.3f}px"
        )

        after = problem.active_counts()
        with np.errstate(divide="ignore", invalid="ignore"):
            dropped = np.where(before > 0, (before - after) / before, 0.0)
        self._freeze_sparse_frames()
        refresh = [
            f for f in range(problem.n_frames)
            if dropped[f] > self.policy.refresh_fraction and f not in problem.frozen_frames
        ]
        if refresh:
            self._refresh_frames(refresh)
        return int(outliers.size)

    def _refresh_frames(self, frames: list[int]) -> None:
        problem = self.problem
        previous = {f: problem.poses[f] for f in frames}
        problem.model = problem.model.with_params(self.params)
        failed = refresh_poses(problem, frames, workers=self.config.workers)

        for f in frames:
            if f in failed:
                continue
            old_cost = self._frame_cost(self.params, previous[f], f)
            new_cost = self._frame_cost(self.params, problem.poses[f], f)
            if new_cost > old_cost:
                problem.poses[f] = previous[f]
            else:
                logger.debug(f"Frame {f}: pose refreshed ({old_cost:.4g} -> {new_cost:.4g})")

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self) -> CalibrationResult:
        problem = self.problem
        config = self.config
        initial_active = int(problem.active.sum())

        self._freeze_sparse_frames()
        self._check_frames()

        current = self._evaluate(self.params, problem.poses, problem.usable_mask())
        self.cost_history.append(current.cost)
        logger.info(
            f"Refining {problem.model.variant.value}: {len(self._usable_frames())} frames, "
            f"{current.indices.size} correspondences, {self.layout.n_free} free intrinsics, "
            f"initial cost {current.cost:.6g}"
        )
        self._transition(RefinerState.REFINING)

        accepted_since_rejection = 0
        status = RefinementStatus.CONVERGENCE_FAILURE

        while self.state is not RefinerState.CONVERGED:
            if self.state is RefinerState.REFINING:
                if self.iterations >= config.max_iterations:
                    self._transition(RefinerState.STOPPED)
                    break
                self.iterations += 1

                trial, step_norm = self._iterate(current)
                if trial is None:
                    converged = True
                else:
                    decrease = current.cost - trial.cost
                    current = trial
                    self.cost_history.append(current.cost)
                    accepted_since_rejection += 1
                    logger.debug(
                        f"Iteration {self.iterations}: cost {current.cost:.6g}, "
                        f"damping {self.damping:.3g}"
                    )
                    scale = np.linalg.norm(self.params) + config.parameter_tolerance
                    converged = (
                        current.cost == 0.0
                        or decrease <= config.function_tolerance * (current.cost + decrease)
                        or step_norm <= config.parameter_tolerance * scale
                    )

                rounds_left = (
                    self.policy.enabled and self.rejection_rounds < self.policy.max_rounds
                )
                interval_due = (
                    self.policy.interval > 0
                    and accepted_since_rejection >= self.policy.interval
                )
                if rounds_left and (converged or interval_due):
                    self._pending_convergence = converged
                    self._transition(RefinerState.REJECTING_OUTLIERS)
                elif converged:
                    self._transition(RefinerState.CONVERGED)
                    status = RefinementStatus.CONVERGED

            elif self.state is RefinerState.REJECTING_OUTLIERS:
                rejected = self._reject_outliers()
                accepted_since_rejection = 0
                self._check_frames()
                if rejected:
                    current = self._evaluate(self.params, problem.poses, problem.usable_mask())
                    self.cost_history.append(current.cost)
                    self.damping = config.initial_damping
                if self._pending_convergence and not rejected:
                    self._transition(RefinerState.CONVERGED)
                    status = RefinementStatus.CONVERGED
                else:
                    self._transition(RefinerState.REFINING)

        problem.model = problem.model.with_params(self.params)
        result = self._result(status, current, initial_active)
        logger.info(
            f"Refinement {status.value} after {self.iterations} iterations: "
            f"cost {result.final_cost:.6g}, median error {result.stats.median:.4f}px, "
            f"{result.rejected_count} rejected"
        )
        return result

    def _result(
        self, status: RefinementStatus, current: _Evaluation, initial_active: int
    ) -> CalibrationResult:
        problem = self.problem
        errors = np.sqrt(current.sq_norms[current.valid])
        frames = problem.frame_index[current.indices[current.valid]]

        per_frame = np.full(problem.n_frames, np.nan)
        sums = np.bincount(frames, weights=errors, minlength=problem.n_frames)
        counts = np.bincount(frames, minlength=problem.n_frames)
        has = counts > 0
        per_frame[has] = sums[has] / counts[has]

        return CalibrationResult(
            model=problem.model,
            poses=[pose.copy() for pose in problem.poses],
            active=problem.active.copy(),
            status=status,
            stats=compute_reprojection_stats(errors),
            per_frame_error=per_frame,
            iterations=self.iterations,
            final_cost=current.cost,
            cost_history=list(self.cost_history),
            transition_counts=Counter(self.transitions),
            rejected_count=initial_active - int(problem.active.sum()),
            frozen_frames=frozenset(problem.frozen_frames),
        )


def refine(
    problem: CalibrationProblem, config: CalibrationConfig | None = None
) -> CalibrationResult:
    """
    Jointly refine intrinsics and poses of a calibration problem.

    Args:
        problem: Problem with an initial model and one pose per frame;
            updated in place
        config: Calibration config (defaults if None)

    Returns:
        CalibrationResult; status CONVERGENCE_FAILURE when the iteration
        cap was hit (the best parameters found are still returned)

    Raises:
        InsufficientFrames: Fewer than config.min_frames usable frames
        SingularLinearSystem: Normal equations singular at every damping
    """
    return RobustRefiner(problem, config or CalibrationConfig()).run()
