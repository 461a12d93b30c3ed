import hydra
import numpy as np
from pymanopt.manifolds import SpecialOrthogonalGroup
from scipy.spatial.transform import Rotation

from sesync.base import dataset_generator

# Rotation exp(sigma * omega) with omega ~ N(0, I) in so(d)
def random_rotation(dimension, sigma, rng):
    if dimension == 2:
        angle = sigma * rng.standard_normal()
        return np.array([[np.cos(angle), -np.sin(angle)],
                         [np.sin(angle), np.cos(angle)]])
    return Rotation.from_rotvec(sigma * rng.standard_normal(3)).as_matrix()

# Generator for a synthetic pose graph: an odometry chain with random loop closures
class MeasurementGenerator(dataset_generator.Generator):
    def generate(self, data):
        # Set hyperparameters
        cfg = self.cfg
        n = cfg.num_poses
        d = cfg.dimension
        rotation_noise = cfg.rotation_noise
        translation_noise = cfg.translation_noise
        loop_closure_probability = cfg.loop_closure_probability
        step_length = cfg.get("step_length", 1.0)
        turn_angle = cfg.get("turn_angle", 0.3)
        rng = np.random.default_rng(cfg.get("seed", None))
        assert n >= 2 and d in (2, 3)
        assert rotation_noise > 0 and translation_noise > 0

        # Ground truth random walk
        R = np.empty((n, d, d))
        t = np.empty((n, d))
        R[0] = np.eye(d)
        t[0] = np.zeros(d)
        for k in range(n - 1):
            direction = rng.standard_normal(d)
            direction = step_length * direction / np.linalg.norm(direction)
            R[k + 1] = R[k] @ random_rotation(d, turn_angle, rng)
            t[k + 1] = t[k] + R[k] @ direction

        # Odometry edges plus loop closures
        edges = [(k, k + 1) for k in range(n - 1)]
        for i in range(n):
            for j in range(i + 2, n):
                if rng.random() < loop_closure_probability:
                    edges.append((i, j))

        kappa = 1 / (2 * rotation_noise ** 2)
        tau = 1 / translation_noise ** 2
        rows = []
        for i, j in edges:
            R_ij = R[i].T @ R[j] @ random_rotation(d, rotation_noise, rng)
            t_ij = R[i].T @ (t[j] - t[i]) + translation_noise * rng.standard_normal(d)
            rows.append(np.concatenate([[i, j, kappa, tau], t_ij, R_ij.ravel()]))

        data.dim = [[d]]  # to be compatible with 'save' function
        data.num_poses = [[n]]
        data.measurements = np.array(rows)
        data.groundtruth = np.hstack([t.T, R.transpose(1, 0, 2).reshape(d, n * d)])  # [t | R]
        self.logger.info(f"Generated {len(edges)} measurements ({len(edges) - (n - 1)} loop closures) on {n} poses")
        return data

# Generator for initial points: random rotations, d x dn
class InitialPointGenerator(dataset_generator.Generator):
    def generate(self, data):
        # Set hyperparameters
        initialpoints = self.cfg.initialpoints
        n = self.cfg.num_poses
        d = self.cfg.dimension

        # pymanopt samples from numpy's global generator
        if self.cfg.get("seed", None) is not None:
            np.random.seed(self.cfg.seed)

        # Generating initial points
        rotations = SpecialOrthogonalGroup(d, k=n)
        for initpt in initialpoints:
            blocks = rotations.random_point()
            setattr(data, f'initx_{initpt}', blocks.transpose(1, 0, 2).reshape(d, n * d))
        return data

@hydra.main(version_base=None, config_path=".", config_name="config_dataset")
def main(cfg):
    measurementgenerator = MeasurementGenerator(cfg)
    measurementgenerator.run()
    initialpointgenerator = InitialPointGenerator(cfg)
    initialpointgenerator.run()

if __name__=='__main__':
    main()
