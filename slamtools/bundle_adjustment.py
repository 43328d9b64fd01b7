"""Bundle adjustment of BAL problems with a Levenberg-Marquardt graph solver."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field

import numpy as np
import scipy.linalg
import scipy.sparse

from .bal import BALProblem
from .lie import so3_exp, so3_log

_NUMERIC_STEP = 1e-6
_LM_TAU = 1e-5
_LM_MAX_TRIALS = 10


@dataclass
class PoseAndIntrinsics:
    """Camera pose with focal length and two radial distortion terms."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    focal: float = 0.0
    k1: float = 0.0
    k2: float = 0.0

    @classmethod
    def from_camera(cls, camera) -> "PoseAndIntrinsics":
        """Build from a 9-value camera block."""
        camera = np.asarray(camera, dtype=float)
        if camera.size != 9:
            raise ValueError("a camera block has 9 values")
        return cls(
            so3_exp(camera[:3]),
            camera[3:6].copy(),
            float(camera[6]),
            float(camera[7]),
            float(camera[8]),
        )

    def to_camera(self) -> np.ndarray:
        """Return the 9-value camera block."""
        return np.concatenate(
            [so3_log(self.rotation), self.translation, [self.focal, self.k1, self.k2]]
        )

    def project(self, point) -> np.ndarray:
        """Project a 3D point to the image with this camera."""
        return _project_batch(
            self.rotation[None],
            np.asarray(self.translation, dtype=float)[None],
            np.array([[self.focal, self.k1, self.k2]]),
            np.asarray(point, dtype=float).reshape(1, 3),
        )[0]


def _project_batch(rot, trans, intr, pts) -> np.ndarray:
    pc = np.einsum("nij,nj->ni", rot, pts) + trans
    pc = -pc / pc[:, 2:3]
    # The squared norm includes the normalised depth component as well.
    r2 = np.einsum("ni,ni->n", pc, pc)
    distortion = 1.0 + r2 * (intr[:, 1] + intr[:, 2] * r2)
    return (intr[:, 0] * distortion)[:, None] * pc[:, :2]


@dataclass
class _State:
    rot: np.ndarray
    trans: np.ndarray
    intr: np.ndarray
    points: np.ndarray

    def updated(self, dc: np.ndarray, dp: np.ndarray) -> "_State":
        rot = np.array([so3_exp(d[:3]) @ r for d, r in zip(dc, self.rot)]).reshape(self.rot.shape)
        return _State(rot, self.trans + dc[:, 3:6], self.intr + dc[:, 6:9], self.points + dp)


def _robust(chi2: np.ndarray):
    rho = np.where(chi2 <= 1.0, chi2, 2.0 * np.sqrt(np.maximum(chi2, 1.0)) - 1.0)
    weight = 1.0 / np.sqrt(np.maximum(chi2, 1.0))
    return rho, weight


class _Graph:
    def __init__(self, problem: BALProblem):
        self.ci = np.asarray(problem.camera_index, dtype=int)
        self.pi = np.asarray(problem.point_index, dtype=int)
        self.meas = np.asarray(problem.observations, dtype=float)
        self.nc = problem.num_cameras
        self.npt = problem.num_points

    def errors(self, s: _State) -> np.ndarray:
        return (
            _project_batch(s.rot[self.ci], s.trans[self.ci], s.intr[self.ci], s.points[self.pi])
            - self.meas
        )

    def cost(self, s: _State) -> float:
        e = self.errors(s)
        return float(_robust(np.einsum("ni,ni->n", e, e))[0].sum())

    def jacobians(self, s: _State):
        rot, trans = s.rot[self.ci], s.trans[self.ci]
        intr, pts = s.intr[self.ci], s.points[self.pi]
        m = len(self.ci)
        jc = np.empty((m, 2, 9))
        jp = np.empty((m, 2, 3))
        h = _NUMERIC_STEP
        scale = 1.0 / (2.0 * h)
        for d in range(3):
            step = np.zeros(3)
            step[d] = h
            jc[:, :, d] = (
                _project_batch(so3_exp(step) @ rot, trans, intr, pts)
                - _project_batch(so3_exp(-step) @ rot, trans, intr, pts)
            ) * scale
            jc[:, :, 3 + d] = (
                _project_batch(rot, trans + step, intr, pts)
                - _project_batch(rot, trans - step, intr, pts)
            ) * scale
            jc[:, :, 6 + d] = (
                _project_batch(rot, trans, intr + step, pts)
                - _project_batch(rot, trans, intr - step, pts)
            ) * scale
            jp[:, :, d] = (
                _project_batch(rot, trans, intr, pts + step)
                - _project_batch(rot, trans, intr, pts - step)
            ) * scale
        return jc, jp

    def assemble(self, s: _State) -> dict:
        e = self.errors(s)
        jc, jp = self.jacobians(s)
        _, weight = _robust(np.einsum("ni,ni->n", e, e))
        w = weight[:, None, None]
        wjc, wjp = w * jc, w * jp

        hcc = np.zeros((self.nc, 9, 9))
        hpp = np.zeros((self.npt, 3, 3))
        bc = np.zeros((self.nc, 9))
        bp = np.zeros((self.npt, 3))
        np.add.at(hcc, self.ci, np.einsum("nki,nkj->nij", wjc, jc))
        np.add.at(hpp, self.pi, np.einsum("nki,nkj->nij", wjp, jp))
        np.add.at(bc, self.ci, -np.einsum("nki,nk->ni", wjc, e))
        np.add.at(bp, self.pi, -np.einsum("nki,nk->ni", wjp, e))

        hcp = np.einsum("nki,nkj->nij", wjc, jp)
        rows = (self.ci * 9)[:, None, None] + np.arange(9)[None, :, None]
        cols = (self.pi * 3)[:, None, None] + np.arange(3)[None, None, :]
        rows, cols = np.broadcast_arrays(rows, cols)
        coupling = scipy.sparse.coo_matrix(
            (hcp.ravel(), (rows.ravel(), cols.ravel())), shape=(9 * self.nc, 3 * self.npt)
        ).tocsr()
        return {"hcc": hcc, "hpp": hpp, "bc": bc, "bp": bp, "w": coupling}

    def solve(self, system: dict, lam: float):
        """Solve the damped system with the points marginalised out."""
        hcc = system["hcc"] + lam * np.eye(9)
        hpp = system["hpp"] + lam * np.eye(3)
        try:
            hpp_inv = np.linalg.inv(hpp)
            rows = (np.arange(self.npt) * 3)[:, None, None] + np.arange(3)[None, :, None]
            cols = (np.arange(self.npt) * 3)[:, None, None] + np.arange(3)[None, None, :]
            rows, cols = np.broadcast_arrays(rows, cols)
            vinv = scipy.sparse.coo_matrix(
                (hpp_inv.ravel(), (rows.ravel(), cols.ravel())),
                shape=(3 * self.npt, 3 * self.npt),
            ).tocsr()
            w = system["w"]
            wv = w @ vinv
            schur = scipy.linalg.block_diag(*hcc) - (wv @ w.T).toarray()
            bc = system["bc"].ravel()
            bp = system["bp"].ravel()
            dc = np.linalg.solve(schur, bc - wv @ bp)
            dp = vinv @ (bp - w.T @ dc)
        except np.linalg.LinAlgError:
            return None
        if not (np.all(np.isfinite(dc)) and np.all(np.isfinite(dp))):
            return None
        return dc.reshape(self.nc, 9), dp.reshape(self.npt, 3)


def solve_ba(problem: BALProblem, max_iterations: int = 40) -> list[float]:
    """Optimise the cameras and points of a problem in place.

    Uses Levenberg-Marquardt with a Huber kernel (delta 1) on every
    observation and returns the robust cost before and after each accepted
    iteration.
    """
    if problem.use_quaternions:
        raise ValueError("bundle adjustment needs angle-axis camera blocks")
    graph = _Graph(problem)
    poses = [PoseAndIntrinsics.from_camera(c) for c in problem.cameras]
    state = _State(
        np.array([p.rotation for p in poses]).reshape(graph.nc, 3, 3),
        np.array([p.translation for p in poses]).reshape(graph.nc, 3),
        np.array([[p.focal, p.k1, p.k2] for p in poses]).reshape(graph.nc, 3),
        np.array(problem.points, dtype=float),
    )

    cost = graph.cost(state)
    costs = [cost]
    lam = None
    nu = 2.0
    for _ in range(max_iterations):
        system = graph.assemble(state)
        if lam is None:
            diag = np.concatenate(
                [np.einsum("nii->ni", system["hcc"]).ravel(),
                 np.einsum("nii->ni", system["hpp"]).ravel()]
            )
            lam = _LM_TAU * (float(diag.max()) if diag.size else 1.0)
        b = np.concatenate([system["bc"].ravel(), system["bp"].ravel()])
        improved = False
        for _ in range(_LM_MAX_TRIALS):
            step = graph.solve(system, lam)
            if step is not None:
                dc, dp = step
                candidate = state.updated(dc, dp)
                new_cost = graph.cost(candidate)
                dx = np.concatenate([dc.ravel(), dp.ravel()])
                predicted = float(dx @ (lam * dx + b)) + 1e-3
                gain = (cost - new_cost) / predicted
                if np.isfinite(new_cost) and gain > 0:
                    lam *= max(1.0 / 3.0, 1.0 - (2.0 * gain - 1.0) ** 3)
                    nu = 2.0
                    state, cost = candidate, new_cost
                    improved = True
                    break
            lam *= nu
            nu *= 2.0
        if not improved:
            break
        costs.append(cost)

    cameras = problem.cameras
    for i in range(graph.nc):
        cameras[i] = PoseAndIntrinsics(
            state.rot[i], state.trans[i], *(float(v) for v in state.intr[i])
        ).to_camera()
    problem.points[:] = state.points
    return costs


def main(argv=None) -> int:
    """Run bundle adjustment on a BAL file, writing initial.ply and final.ply."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("usage: bundle_adjustment bal_data.txt")
        return 1

    problem = BALProblem(args[0])
    problem.normalize()
    problem.perturb(0.1, 0.5, 0.5)
    problem.write_to_ply_file("initial.ply")
    print("bal problem file loaded...")
    print(f"bal problem have {problem.num_cameras} cameras and {problem.num_points} points. ")
    print(f"Forming {problem.num_observations} observations. ")
    print("Solving BA ... ")
    costs = solve_ba(problem, 40)
    for i, c in enumerate(costs):
        print(f"iteration {i} chi2= {c:.12g}")
    problem.write_to_ply_file("final.ply")
    return 0