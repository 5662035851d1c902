"""
Least-squares problem collaborator backed by scipy

Mirrors the small part of the Ceres problem API that the residual builders
use: parameter blocks are caller-owned float64 arrays (usually row views into
the point / camera arrays), residual blocks pair a cost function with an
optional robust loss, and solving writes the optimum back into the caller's
arrays.

The cost minimised is the Ceres one:

    0.5 * sum_i rho_i(||r_i||^2)

Robust losses are folded into the residual vector handed to
``scipy.optimize.least_squares`` by scaling each block with
sqrt(rho(s) / s), so its sum of squares equals the robust cost.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .config import SolverConfig

logger = logging.getLogger(__name__)


class LossFunction:
    """Robust loss rho(s) evaluated on the squared norm of a residual block"""

    name = "trivial"

    def __init__(self, width: float):
        if width <= 0:
            raise ValueError(f"Loss width must be positive, got {width}")
        self.width = float(width)

    def rho(self, s: float) -> float:
        return s

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.width})"


class CauchyLoss(LossFunction):
    """rho(s) = a^2 * log(1 + s / a^2)"""

    name = "cauchy"

    def rho(self, s: float) -> float:
        b = self.width * self.width
        return b * np.log1p(s / b)


class HuberLoss(LossFunction):
    """rho(s) = s for s <= a^2, 2 * a * sqrt(s) - a^2 otherwise"""

    name = "huber"

    def rho(self, s: float) -> float:
        b = self.width * self.width
        if s > b:
            return 2.0 * self.width * np.sqrt(s) - b
        return s


_LOSSES = {loss.name: loss for loss in (CauchyLoss, HuberLoss)}


def make_loss(loss_type: str, width: float) -> Optional[LossFunction]:
    """Create a robust loss, or None (plain squared error) when ``width <= 0``"""
    if width <= 0:
        return None
    if loss_type not in _LOSSES:
        raise ValueError(f"Unknown loss type '{loss_type}', expected one of {sorted(_LOSSES)}")
    return _LOSSES[loss_type](width)


@dataclass
class SolverSummary:
    """Outcome of a solve, shaped after the Ceres solver summary"""

    backend: str
    success: bool
    termination: str
    message: str = ""
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_residual_blocks: int = 0
    num_residuals: int = 0
    num_parameters: int = 0
    num_evaluations: int = 0
    solve_time: float = 0.0

    def brief_report(self) -> str:
        return (
            f"{self.backend} solver: {self.termination}, "
            f"cost {self.initial_cost:.6e} -> {self.final_cost:.6e}, "
            f"{self.num_residual_blocks} residual blocks, {self.num_parameters} parameters, "
            f"{self.num_evaluations} evaluations in {self.solve_time:.2f}s"
        )


@dataclass
class _ParameterBlock:
    values: np.ndarray
    constant: bool = False
    offset: int = -1


@dataclass
class _ResidualBlock:
    cost_function: Any
    loss_function: Optional[LossFunction]
    parameter_blocks: List[np.ndarray] = field(default_factory=list)
    num_residuals: int = 0


def _block_address(values: np.ndarray) -> int:
    return values.__array_interface__["data"][0]


class LeastSquaresProblem:
    """Nonlinear least-squares problem solved with scipy's trust-region reflective method"""

    backend = "scipy"

    def __init__(self):
        self._parameter_blocks: Dict[int, _ParameterBlock] = {}
        self._residual_blocks: List[_ResidualBlock] = []

    def add_parameter_block(self, values: np.ndarray) -> None:
        """Register a caller-owned array; re-registering the same array is a no-op"""
        if not isinstance(values, np.ndarray) or values.dtype != np.float64:
            raise ValueError("Parameter blocks must be float64 numpy arrays")
        if values.ndim != 1 or not values.flags.c_contiguous:
            raise ValueError("Parameter blocks must be contiguous 1-D arrays so they can be updated in place")
        if not values.flags.writeable:
            raise ValueError("Parameter blocks must be writeable")

        address = _block_address(values)
        existing = self._parameter_blocks.get(address)
        if existing is None:
            self._parameter_blocks[address] = _ParameterBlock(values)
        elif existing.values.size != values.size:
            raise ValueError(
                f"Parameter block at {address:#x} was registered with size {existing.values.size}, "
                f"got size {values.size}"
            )

    def add_residual_block(
        self,
        cost_function: Any,
        loss_function: Optional[LossFunction],
        parameter_blocks: Sequence[np.ndarray],
    ) -> int:
        """
        Add one residual block

        Args:
            cost_function: callable mapping the parameter blocks to a residual vector
            loss_function: robust loss or None
            parameter_blocks: arrays the residual depends on

        Returns:
            Index of the new residual block
        """
        expected_sizes = getattr(cost_function, "parameter_block_sizes", None)
        if expected_sizes is not None:
            actual_sizes = tuple(block.size for block in parameter_blocks)
            if tuple(expected_sizes) != actual_sizes:
                raise ValueError(f"Cost function expects blocks of sizes {tuple(expected_sizes)}, got {actual_sizes}")

        for block in parameter_blocks:
            self.add_parameter_block(block)
        blocks = [self._parameter_blocks[_block_address(block)].values for block in parameter_blocks]

        num_residuals = getattr(cost_function, "num_residuals", None)
        if num_residuals is None:
            num_residuals = np.asarray(cost_function(*blocks)).size

        self._residual_blocks.append(_ResidualBlock(cost_function, loss_function, blocks, int(num_residuals)))
        return len(self._residual_blocks) - 1

    def set_parameter_block_constant(self, values: np.ndarray) -> None:
        self._lookup(values).constant = True

    def set_parameter_block_variable(self, values: np.ndarray) -> None:
        self._lookup(values).constant = False

    def is_parameter_block_constant(self, values: np.ndarray) -> bool:
        return self._lookup(values).constant

    def num_parameter_blocks(self) -> int:
        return len(self._parameter_blocks)

    def num_residual_blocks(self) -> int:
        return len(self._residual_blocks)

    def num_residuals(self) -> int:
        return sum(block.num_residuals for block in self._residual_blocks)

    def evaluate(self) -> float:
        """Total robust cost at the current parameter values"""
        residuals = self._robust_residuals()
        return 0.5 * float(residuals @ residuals)

    def solve(self, config: Optional[SolverConfig] = None) -> SolverSummary:
        """Minimise the problem, updating every variable parameter block in place"""
        config = config or SolverConfig()
        start_time = time.time()

        variable = [block for block in self._parameter_blocks.values() if not block.constant]
        offset = 0
        for block in variable:
            block.offset = offset
            offset += block.values.size
        num_parameters = offset

        summary = SolverSummary(
            backend=self.backend,
            success=True,
            termination="NO_WORK",
            num_residual_blocks=self.num_residual_blocks(),
            num_residuals=self.num_residuals(),
            num_parameters=num_parameters,
        )

        initial_residuals = self._robust_residuals()
        if not np.all(np.isfinite(initial_residuals)):
            summary.success = False
            summary.termination = "FAILURE"
            summary.message = "Residuals are not finite at the initial point"
            summary.initial_cost = summary.final_cost = float("nan")
            logger.error(summary.message)
            return summary

        summary.initial_cost = summary.final_cost = 0.5 * float(initial_residuals @ initial_residuals)
        if num_parameters == 0 or summary.num_residuals == 0:
            logger.info("Nothing to optimize: no variable parameters or no residuals")
            return summary

        x0 = np.concatenate([block.values for block in variable])

        def residual_function(x: np.ndarray) -> np.ndarray:
            self._write_parameters(variable, x)
            return self._robust_residuals()

        logger.info(
            f"Solving {summary.num_residual_blocks} residual blocks over "
            f"{num_parameters} parameters ({len(variable)} blocks)"
        )
        # The sparse (lsmr) trust region solves a 2-D subspace and needs two unknowns
        if num_parameters > 1:
            jacobian_options = {"jac_sparsity": self._jacobian_sparsity(summary.num_residuals, num_parameters)}
        else:
            jacobian_options = {"tr_solver": "exact"}

        result = least_squares(
            residual_function,
            x0,
            method="trf",
            **jacobian_options,
            x_scale="jac",
            ftol=config.ftol,
            xtol=config.xtol,
            gtol=config.gtol,
            max_nfev=config.max_iterations,
            verbose=config.verbose,
        )
        self._write_parameters(variable, result.x)

        summary.success = bool(result.status > 0)
        summary.termination = "CONVERGENCE" if result.status > 0 else "NO_CONVERGENCE"
        summary.message = result.message
        summary.final_cost = float(result.cost)
        summary.num_evaluations = int(result.nfev)
        summary.solve_time = time.time() - start_time

        logger.info(summary.brief_report())
        return summary

    def _lookup(self, values: np.ndarray) -> _ParameterBlock:
        block = self._parameter_blocks.get(_block_address(values))
        if block is None:
            raise KeyError("Parameter block is not part of this problem")
        return block

    def _write_parameters(self, variable: List[_ParameterBlock], x: np.ndarray) -> None:
        for block in variable:
            block.values[:] = x[block.offset:block.offset + block.values.size]

    def _robust_residuals(self) -> np.ndarray:
        chunks = []
        for residual_block in self._residual_blocks:
            residual = np.asarray(
                residual_block.cost_function(*residual_block.parameter_blocks), dtype=np.float64
            ).ravel()
            if residual_block.loss_function is not None:
                s = float(residual @ residual)
                if s > 0.0:
                    residual = residual * np.sqrt(residual_block.loss_function.rho(s) / s)
            chunks.append(residual)
        if not chunks:
            return np.zeros(0)
        return np.concatenate(chunks)

    def _jacobian_sparsity(self, num_residuals: int, num_parameters: int) -> lil_matrix:
        sparsity = lil_matrix((num_residuals, num_parameters), dtype=int)
        row = 0
        for residual_block in self._residual_blocks:
            rows = slice(row, row + residual_block.num_residuals)
            for values in residual_block.parameter_blocks:
                block = self._lookup(values)
                if not block.constant:
                    sparsity[rows, block.offset:block.offset + block.values.size] = 1
            row += residual_block.num_residuals
        return sparsity


def create_problem(backend: str = "scipy"):
    """
    Create an optimizer problem for the requested backend

    Falls back to the scipy problem when pyceres is not installed.
    """
    if backend == "ceres":
        from .ceres_problem import PYCERES_AVAILABLE, CeresProblem

        if PYCERES_AVAILABLE:
            return CeresProblem()
        logger.warning("PyCeres not available, falling back to scipy least squares")
    elif backend != "scipy":
        raise ValueError(f"Unknown solver backend '{backend}'")
    return LeastSquaresProblem()
