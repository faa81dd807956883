"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements the most important functions for the resolution of a bundle adjustment optimization
The problem is a collection of residual blocks, each one made of a cost function, a robust loss
and the parameter blocks it depends on. Parameter blocks are numpy arrays owned by the caller,
which are updated in place with the solution. The problem is solved as a sparse nonlinear
least squares problem with scipy, the jacobian being assembled block by block
"""

import os
import timeit

import matplotlib.pyplot as plt
import numpy as np
from scipy import sparse
from scipy.optimize import least_squares

from sat_adjust import ba_costs, loader


class Error(Exception):
    pass


class ResidualBlock:
    def __init__(self, cost, loss, block_ids):
        self.cost = cost
        self.loss = loss
        self.block_ids = block_ids


class SolverSummary:
    def __init__(self, status, message, iterations, initial_cost, final_cost, elapsed_time):
        self.status = status
        self.message = message
        self.iterations = iterations
        self.initial_cost = initial_cost
        self.final_cost = final_cost
        self.converged = status > 0
        self.elapsed_time = elapsed_time


def init_optimization_config(config=None):
    """
    Initializes the configuration of the bundle adjustment optimization algorithm

    Args:
        config: dict possibly containing values that we want to be different from default
                the default configuration is used for all parameters not specified in config

    Returns:
        output_config: dict where keys identify the parameters and values their assigned value
    """
    keys = ["ftol", "xtol", "gtol", "max_iter", "verbose"]
    default_values = [1e-10, 1e-10, 1e-10, 100, 0]
    output_config = {}
    if config is not None:
        for v, k in zip(default_values, keys):
            output_config[k] = config[k] if k in config.keys() else v
    else:
        output_config = dict(zip(keys, default_values))
    return output_config


def central_diff(cost, values, j, k):
    """
    Derivative of the residuals of cost with respect to the k-th value of the j-th parameter block
    """
    x = values[j][k]
    h = max(abs(x) * 1e-6, 1e-6)
    plus, minus = list(values), list(values)
    plus[j], minus[j] = values[j].copy(), values[j].copy()
    plus[j][k] = x + h
    minus[j][k] = x - h
    return (cost(plus) - cost(minus)) / (2 * h)


def ridders_diff(cost, values, j, k, h=1e-2, con=1.4, ntab=10, safe=2.0):
    """
    Derivative of the residuals of cost with respect to the k-th value of the j-th parameter block
    by Ridders' extrapolation of central differences with decreasing steps (Numerical Recipes, dfridr)
    The initial step h is absolute
    """

    def central(step):
        plus, minus = list(values), list(values)
        plus[j], minus[j] = values[j].copy(), values[j].copy()
        plus[j][k] += step
        minus[j][k] -= step
        return (cost(plus) - cost(minus)) / (2 * step)

    con2 = con * con
    a = [[None] * ntab for _ in range(ntab)]
    a[0][0] = central(h)
    ans, err = a[0][0], np.inf
    for i in range(1, ntab):
        h /= con
        a[0][i] = central(h)
        fac = con2
        for m in range(1, i + 1):
            a[m][i] = (a[m - 1][i] * fac - a[m - 1][i - 1]) / (fac - 1.0)
            fac *= con2
            errt = max(np.max(np.abs(a[m][i] - a[m - 1][i])), np.max(np.abs(a[m][i] - a[m - 1][i - 1])))
            if errt <= err:
                err, ans = errt, a[m][i]
        if np.max(np.abs(a[i][i] - a[i - 1][i - 1])) >= safe * err:
            break
    return ans


class Problem:
    def __init__(self):
        self.parameter_blocks = {}
        self.block_order = []
        self.constant_blocks = set()
        self.residual_blocks = []

    def add_parameter_block(self, block):
        """
        Register a 1d float64 array as a parameter block, returns its identifier
        Adding the same array twice has no effect
        """
        if not isinstance(block, np.ndarray) or block.ndim != 1 or block.dtype != np.float64:
            raise Error("Parameter blocks must be 1d float64 numpy arrays")
        key = id(block)
        if key not in self.parameter_blocks:
            self.parameter_blocks[key] = block
            self.block_order.append(key)
        return key

    def add_residual_block(self, cost, loss, blocks):
        """
        Args:
            cost: cost function, with num_residuals, block_sizes and __call__(param_blocks)
            loss: ba_costs.LossFunction or None for the squared loss
            blocks: list of parameter blocks, in the order expected by the cost function
        """
        if len(blocks) != len(cost.block_sizes):
            raise Error("Expected {} parameter blocks, got {}".format(len(cost.block_sizes), len(blocks)))
        for block, size in zip(blocks, cost.block_sizes):
            if block.size != size:
                raise Error("Parameter block of size {} where {} was expected".format(block.size, size))
        block_ids = [self.add_parameter_block(b) for b in blocks]
        loss = ba_costs.LossFunction("l2") if loss is None else loss
        self.residual_blocks.append(ResidualBlock(cost, loss, block_ids))
        return len(self.residual_blocks) - 1

    def set_parameter_block_constant(self, block):
        self.constant_blocks.add(self.add_parameter_block(block))

    def set_parameter_block_variable(self, block):
        self.constant_blocks.discard(self.add_parameter_block(block))

    def num_residuals(self):
        return int(sum(rb.cost.num_residuals for rb in self.residual_blocks))

    def free_block_offsets(self):
        offsets, n = {}, 0
        for key in self.block_order:
            if key not in self.constant_blocks:
                offsets[key] = n
                n += self.parameter_blocks[key].size
        return offsets, n

    def get_x(self, offsets, n):
        x = np.zeros(n)
        for key, off in offsets.items():
            block = self.parameter_blocks[key]
            x[off : off + block.size] = block
        return x

    def set_x(self, x, offsets):
        for key, off in offsets.items():
            block = self.parameter_blocks[key]
            block[:] = x[off : off + block.size]

    def block_values(self, rb):
        return [self.parameter_blocks[key] for key in rb.block_ids]

    def evaluate_residual_blocks(self):
        """
        Raw residuals of each residual block (before the robust loss), as a list of arrays
        """
        return [np.asarray(rb.cost(self.block_values(rb)), dtype=np.float64) for rb in self.residual_blocks]

    def evaluate(self):
        """
        Returns the cost 0.5 * sum(rho(||r||^2)) and the vector of raw residuals
        """
        raw = self.evaluate_residual_blocks()
        cost = 0.5 * sum(rb.loss(float(r @ r))[0] for rb, r in zip(self.residual_blocks, raw))
        residuals = np.concatenate(raw) if len(raw) > 0 else np.zeros(0)
        return cost, residuals

    def block_jacobian(self, rb, values, offsets):
        """
        Jacobian of the raw residuals of a residual block with respect to its free parameter blocks
        """
        cost = rb.cost
        free = [j for j, key in enumerate(rb.block_ids) if key in offsets]
        if len(free) == 0:
            return []
        if hasattr(cost, "jacobian"):
            jacs = cost.jacobian(values)
            return [(j, np.asarray(jacs[j], dtype=np.float64)) for j in free]
        diff = ridders_diff if cost.numeric_diff == "ridders" else central_diff
        out = []
        for j in free:
            cols = [diff(cost, values, j, k) for k in range(values[j].size)]
            out.append((j, np.array(cols).T.reshape(cost.num_residuals, values[j].size)))
        return out

    def robust_weights(self, rb, r):
        """
        Scale g such that ||g r||^2 = rho(||r||^2), and the derivative of g with respect to s = ||r||^2
        """
        if rb.loss.is_trivial():
            return 1.0, 0.0
        s = float(r @ r)
        rho, rho1 = rb.loss(s)
        if s < 1e-30:
            return 1.0, 0.0
        g = np.sqrt(rho / s)
        dg = (rho1 * s - rho) / (2 * s * s * g)
        return g, dg

    def residuals_and_jacobian(self, offsets, n, with_jacobian=True):
        rows, cols, data, res = [], [], [], []
        row0 = 0
        for rb in self.residual_blocks:
            values = [v.copy() for v in self.block_values(rb)]
            r = np.asarray(rb.cost(values), dtype=np.float64)
            g, dg = self.robust_weights(rb, r)
            res.append(g * r)
            if with_jacobian:
                for j, J in self.block_jacobian(rb, values, offsets):
                    if dg != 0:
                        J = g * J + 2 * dg * np.outer(r, r @ J)
                    elif g != 1.0:
                        J = g * J
                    m, size = J.shape
                    rr, cc = np.meshgrid(np.arange(m), np.arange(size), indexing="ij")
                    rows.append((row0 + rr).ravel())
                    cols.append((offsets[rb.block_ids[j]] + cc).ravel())
                    data.append(J.ravel())
            row0 += rb.cost.num_residuals
        res = np.concatenate(res) if len(res) > 0 else np.zeros(0)
        if not with_jacobian:
            return res, None
        if len(data) > 0:
            rows, cols, data = np.concatenate(rows), np.concatenate(cols), np.concatenate(data)
        # duplicated entries are summed, e.g. blocks shared by the two cameras of a residual
        J = sparse.coo_matrix((data, (rows, cols)), shape=(row0, n)).tocsr()
        return res, J

    def solve(self, config=None):
        """
        Minimize the sum of robust losses over the free parameter blocks
        The parameter blocks are updated in place with the solution, even if the solver does not converge

        Args:
            config (optional): dict with the optimization configuration, see init_optimization_config

        Returns:
            summary: SolverSummary object
        """
        config = init_optimization_config(config)
        offsets, n = self.free_block_offsets()
        initial_cost, _ = self.evaluate()
        if n == 0 or len(self.residual_blocks) == 0:
            print("WARNING: Nothing to optimize, all parameter blocks are constant")
            return SolverSummary(0, "no free parameters", 0, initial_cost, initial_cost, 0.0)

        def fun(x):
            self.set_x(x, offsets)
            return self.residuals_and_jacobian(offsets, n, with_jacobian=False)[0]

        def jac(x):
            self.set_x(x, offsets)
            return self.residuals_and_jacobian(offsets, n)[1]

        x0 = self.get_x(offsets, n)
        t0 = timeit.default_timer()
        res = least_squares(
            fun,
            x0,
            jac=jac,
            method="trf",
            tr_solver="lsmr",
            x_scale="jac",
            ftol=config["ftol"],
            xtol=config["xtol"],
            gtol=config["gtol"],
            max_nfev=config["max_iter"],
            verbose=config["verbose"],
        )
        elapsed_time = timeit.default_timer() - t0
        self.set_x(res.x, offsets)
        final_cost, _ = self.evaluate()
        summary = SolverSummary(res.status, res.message, res.nfev, initial_cost, final_cost, elapsed_time)
        if not summary.converged:
            print("WARNING: The solver did not converge ({}), the current solution is kept".format(res.message))
        return summary


def save_histogram_of_errors(img_path, err_init, err_ba, plot=False):
    """
    Writes a png image with the histogram of errors before and after the bundle adjustment

    Args:
        img_path: string, filename of the png image that will be written on the disk
        err_init: vector with the reprojection error of each 2d observation before bundle adjustment
        err_ba: vector with the reprojection error of each 2d observation after bundle adjustment
        plot (optional): plot a matplotlib figure instead of saving output image
    """
    plt.figure(figsize=(12, 3))
    plt.subplot(1, 2, 1)
    plt.hist(err_init, bins=40)
    plt.title("Before BA")
    plt.ylabel("Number of tie point observations")
    plt.xlabel("Reprojection error (pixel units)")

    plt.subplot(1, 2, 2)
    plt.hist(err_ba, bins=40, range=(err_init.min(), err_init.max()))
    plt.title("After BA")
    plt.ylabel("Number of tie point observations")
    plt.xlabel("Reprojection error (pixel units)")
    if plot:
        plt.show()
    else:
        os.makedirs(os.path.dirname(os.path.abspath(img_path)), exist_ok=True)
        plt.savefig(img_path, bbox_inches="tight")
    plt.close()
    loader.flush_print("Histogram of reprojection errors written at {}".format(img_path))
