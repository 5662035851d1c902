"""
Ceres problem collaborator (optional, requires pyceres)

Wraps the reprojection functors into ``pyceres.CostFunction`` objects with
numeric Jacobians and forwards losses to their Ceres counterparts, so the
residual builders can target a real Ceres problem unchanged.
"""

import logging
import time
from typing import Any, List, Optional, Sequence

import numpy as np

from .config import SolverConfig
from .problem import CauchyLoss, HuberLoss, LossFunction, SolverSummary

logger = logging.getLogger(__name__)

try:
    import pyceres
    PYCERES_AVAILABLE = True
except ImportError:
    PYCERES_AVAILABLE = False
    pyceres = None


if PYCERES_AVAILABLE:

    class CeresCostFunction(pyceres.CostFunction):
        """Adapter exposing a reprojection functor through the Ceres cost function interface"""

        def __init__(self, functor: Any):
            super().__init__()
            self.functor = functor
            self.block_sizes = list(functor.parameter_block_sizes)
            self.set_num_residuals(functor.num_residuals)
            self.set_parameter_block_sizes(self.block_sizes)

        def Evaluate(self, parameters: List[np.ndarray], residuals: np.ndarray,
                     jacobians: Optional[List[np.ndarray]]) -> bool:
            camera = np.asarray(parameters[0], dtype=np.float64)
            point = np.asarray(parameters[1], dtype=np.float64)

            values, blocks = self.functor.evaluate(camera, point, jacobians=jacobians is not None)
            residuals[:] = values

            if jacobians is not None:
                for i, jacobian in enumerate(blocks):
                    # Ceres expects row-major (num_residuals x block_size)
                    if jacobians[i] is not None:
                        jacobians[i][:] = jacobian.ravel()

            return True


def _ceres_loss(loss_function: Optional[LossFunction]):
    if loss_function is None:
        return None
    if isinstance(loss_function, CauchyLoss):
        return pyceres.CauchyLoss(loss_function.width)
    if isinstance(loss_function, HuberLoss):
        return pyceres.HuberLoss(loss_function.width)
    raise ValueError(f"No Ceres equivalent for loss {loss_function!r}")


class CeresProblem:
    """Problem collaborator backed by ``pyceres.Problem``"""

    backend = "ceres"

    def __init__(self):
        if not PYCERES_AVAILABLE:
            raise ImportError("pyceres is required for the Ceres backend")
        self.problem = pyceres.Problem()
        # pyceres does not keep Python-side cost objects alive
        self._cost_functions: List[Any] = []
        self._loss_functions: List[Any] = []

    def add_residual_block(self, cost_function: Any, loss_function: Optional[LossFunction],
                           parameter_blocks: Sequence[np.ndarray]):
        cost = CeresCostFunction(cost_function)
        loss = _ceres_loss(loss_function)
        self._cost_functions.append(cost)
        self._loss_functions.append(loss)
        return self.problem.add_residual_block(cost, loss, list(parameter_blocks))

    def set_parameter_block_constant(self, values: np.ndarray) -> None:
        self.problem.set_parameter_block_constant(values)

    def set_parameter_block_variable(self, values: np.ndarray) -> None:
        self.problem.set_parameter_block_variable(values)

    def num_parameter_blocks(self) -> int:
        return self.problem.num_parameter_blocks()

    def num_residual_blocks(self) -> int:
        return self.problem.num_residual_blocks()

    def num_residuals(self) -> int:
        return self.problem.num_residuals()

    def solve(self, config: Optional[SolverConfig] = None) -> SolverSummary:
        config = config or SolverConfig()
        start_time = time.time()

        options = pyceres.SolverOptions()
        options.linear_solver_type = pyceres.LinearSolverType.SPARSE_SCHUR
        options.preconditioner_type = pyceres.PreconditionerType.SCHUR_JACOBI
        options.num_threads = config.num_threads
        options.max_num_iterations = config.max_iterations
        options.function_tolerance = config.ftol
        options.parameter_tolerance = config.xtol
        options.gradient_tolerance = config.gtol
        options.minimizer_progress_to_stdout = config.verbose >= 2
        if config.verbose == 0:
            options.logging_type = pyceres.LoggingType.SILENT

        ceres_summary = pyceres.SolverSummary()
        pyceres.solve(options, self.problem, ceres_summary)

        termination = ceres_summary.termination_type
        summary = SolverSummary(
            backend=self.backend,
            success=termination in (pyceres.TerminationType.CONVERGENCE, pyceres.TerminationType.USER_SUCCESS),
            termination=str(termination).split(".")[-1],
            message=ceres_summary.message,
            initial_cost=float(ceres_summary.initial_cost),
            final_cost=float(ceres_summary.final_cost),
            num_residual_blocks=self.num_residual_blocks(),
            num_residuals=self.num_residuals(),
            num_parameters=self.problem.num_parameters(),
            num_evaluations=int(ceres_summary.num_successful_steps + ceres_summary.num_unsuccessful_steps),
            solve_time=time.time() - start_time,
        )

        if termination == pyceres.TerminationType.NO_CONVERGENCE:
            logger.warning("Bundle adjustment did not converge, using partial results")
        elif not summary.success:
            logger.error(f"Ceres solve failed: {summary.message}")
        logger.info(summary.brief_report())
        return summary
