"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements all functions necessary to define all variables involved in the bundle adjustment
in the necessary format employed by the numerical optimization tools: the control network with the
feature tracks and ground control points, and the storage of the parameter blocks
"""

import os

import numpy as np

from sat_adjust import loader


class Error(Exception):
    pass


class Observation:
    def __init__(self, cam_index, pixel, pixel_sigma=1.0):
        self.cam_index = int(cam_index)
        self.pixel = np.array(pixel, dtype=np.float64)
        self.pixel_sigma = np.broadcast_to(np.array(pixel_sigma, dtype=np.float64), (2,)).copy()


class Track:
    def __init__(self, xyz=None, observations=None, is_gcp=False, xyz_sigma=None):
        """
        Set of observations of the same 3d point across several cameras

        Args:
            xyz (optional): 3-valued vector, current estimate of the point in ECEF
            observations (optional): list of Observation objects
            is_gcp (optional): boolean, True if xyz is a ground control point with a known position
            xyz_sigma (optional): 3-valued vector with the uncertainty of a ground control point in meters
        """
        self.xyz = None if xyz is None else np.array(xyz, dtype=np.float64)
        self.observations = [] if observations is None else list(observations)
        self.is_gcp = is_gcp
        self.xyz_sigma = None if xyz_sigma is None else np.array(xyz_sigma, dtype=np.float64)

    def is_usable(self):
        if self.xyz is None or not np.all(np.isfinite(self.xyz)):
            return False
        return self.is_gcp or len(self.observations) >= 2


class ControlNetwork:
    def __init__(self, tracks=None):
        self.tracks = [] if tracks is None else list(tracks)

    def add_track(self, track):
        self.tracks.append(track)
        return len(self.tracks) - 1

    def __len__(self):
        return len(self.tracks)

    @classmethod
    def from_observations(cls, cam_ind, pts_ind, pts2d, pixel_sigma=1.0, pts3d=None):
        """
        Build a control network from a list of observations

        Args:
            cam_ind: vector with the camera index of each observation
            pts_ind: vector with the track index of each observation
            pts2d: Nx2 array with the (col, row) coordinates of each observation
            pixel_sigma (optional): float or vector with the sigma of each observation
            pts3d (optional): Kx3 array with the initial 3d points of the K tracks
        """
        cam_ind, pts_ind = np.asarray(cam_ind, dtype=int), np.asarray(pts_ind, dtype=int)
        pts2d = np.asarray(pts2d, dtype=np.float64)
        if not (cam_ind.size == pts_ind.size == pts2d.shape[0]):
            raise Error("Inconsistent number of observations")
        sigmas = np.broadcast_to(np.asarray(pixel_sigma, dtype=np.float64), (cam_ind.size,))
        n_pts = pts_ind.max() + 1 if pts_ind.size > 0 else 0
        if pts3d is not None:
            n_pts = max(n_pts, len(pts3d))
        tracks = [Track(None if pts3d is None else pts3d[i]) for i in range(n_pts)]
        for c, p, pix, s in zip(cam_ind, pts_ind, pts2d, sigmas):
            tracks[p].observations.append(Observation(c, pix, s))
        return cls(tracks)

    @classmethod
    def from_correspondence_matrix(cls, C, pts3d=None, pixel_sigma=1.0):
        """
        Build a control network from a correspondence matrix

        Args:
            C: 2MxN array, rows 2i and 2i+1 hold the (col, row) coordinates of the N tracks in camera i
               NaN values mean that the track is not seen in the camera
            pts3d (optional): Nx3 array with the initial 3d points of the tracks
        """
        C = np.asarray(C, dtype=np.float64)
        if C.shape[0] % 2 != 0:
            raise Error("The correspondence matrix must have an even number of rows")
        n_cam = C.shape[0] // 2
        mask = ~np.isnan(C[::2])
        cam_ind = np.vstack([np.arange(n_cam)] * C.shape[1]).T[mask]
        pts_ind = np.vstack([np.arange(C.shape[1])] * n_cam)[mask]
        pts2d = np.vstack([C[::2][mask], C[1::2][mask]]).T
        network = cls.from_observations(cam_ind, pts_ind, pts2d, pixel_sigma, pts3d)
        while len(network.tracks) < C.shape[1]:
            network.add_track(Track())
        return network

    def to_correspondence_matrix(self, n_cam):
        C = np.full((2 * n_cam, len(self.tracks)), np.nan)
        for i, track in enumerate(self.tracks):
            for obs in track.observations:
                C[2 * obs.cam_index : 2 * obs.cam_index + 2, i] = obs.pixel
        return C

    def add_gcp_file(self, fname, image_names, datum):
        """
        Add the ground control points of a text file, one point per line:
        id lat lon height sigma_lat sigma_lon sigma_height, followed for each image where it is seen by
        image_name col row sigma_col sigma_row. Sigmas are in meters (position) and pixels (observations)

        Args:
            fname: path to the gcp file
            image_names: list of image paths or names, the position in the list is the camera index
            datum: geo_utils.Datum of the gcp coordinates

        Returns:
            n_gcp: number of ground control points added
        """
        if not os.path.exists(fname):
            raise Error("GCP file not found: {}".format(fname))
        name_to_idx = {}
        for i, name in enumerate(image_names):
            name_to_idx[name] = i
            name_to_idx[os.path.basename(name)] = i
            name_to_idx[loader.get_id(name)] = i
        n_gcp = 0
        with open(fname) as f:
            for line_idx, line in enumerate(f.readlines()):
                tokens = line.replace(",", " ").split()
                if len(tokens) == 0 or tokens[0].startswith("#"):
                    continue
                if len(tokens) < 7 or (len(tokens) - 7) % 5 != 0:
                    raise Error("Malformed line {} in GCP file {}".format(line_idx + 1, fname))
                try:
                    lat, lon, h, s_lat, s_lon, s_h = map(float, tokens[1:7])
                except ValueError:
                    raise Error("Malformed line {} in GCP file {}".format(line_idx + 1, fname))
                observations = []
                for k in range(7, len(tokens), 5):
                    im = tokens[k]
                    idx = name_to_idx.get(im, name_to_idx.get(loader.get_id(im), None))
                    if idx is None:
                        print("WARNING: GCP {} is seen in unknown image {}, skipped".format(tokens[0], im))
                        continue
                    col, row, s_col, s_row = map(float, tokens[k + 1 : k + 5])
                    observations.append(Observation(idx, [col, row], [s_col, s_row]))
                if len(observations) == 0:
                    print("WARNING: GCP {} is not seen in any input image, skipped".format(tokens[0]))
                    continue
                xyz = datum.geodetic_to_cartesian([lon, lat, h])
                self.add_track(Track(xyz, observations, is_gcp=True, xyz_sigma=[s_lon, s_lat, s_h]))
                n_gcp += 1
        return n_gcp

    def observations_per_camera(self, n_cam, only_usable=True):
        counts = np.zeros(n_cam, dtype=int)
        for track in self.tracks:
            if only_usable and not track.is_usable():
                continue
            for obs in track.observations:
                counts[obs.cam_index] += 1
        return counts

    def triangulate(self, cameras, overwrite=False, verbose=False):
        """
        Initialize the 3d point of each track by linear multiview triangulation:
        the point minimizing the sum of squared distances to the rays of all observations
        Ground control points keep their known position

        Args:
            cameras: list of cameras, indexed by the camera index of the observations
            overwrite (optional): if False, only tracks without a 3d point are triangulated

        Returns:
            n_tri: number of triangulated tracks
        """
        n_tri, n_fail = 0, 0
        for track in self.tracks:
            if track.is_gcp or len(track.observations) < 2 or (track.xyz is not None and not overwrite):
                continue
            A, b = np.zeros((3, 3)), np.zeros(3)
            for obs in track.observations:
                cam = cameras[obs.cam_index]
                d = cam.pixel_to_vector(obs.pixel)
                c = cam.camera_center(obs.pixel)
                M = np.eye(3) - np.outer(d, d)
                A += M
                b += M @ c
            if np.linalg.cond(A) > 1e12:
                n_fail += 1
                continue
            track.xyz = np.linalg.solve(A, b)
            n_tri += 1
        if n_fail > 0:
            print("WARNING: {} tracks could not be triangulated (parallel rays)".format(n_fail))
        if verbose:
            loader.flush_print("{} tracks triangulated".format(n_tri))
        return n_tri


class BAParams:
    def __init__(self, models, network, shared_intrinsics=False):
        """
        Storage of the parameter blocks of a bundle adjustment problem
        Every block is a numpy view into a storage array, so that the solver updates them in place.
        A copy of the initial values is kept for the regularization terms

        Args:
            models: list of bundle models, one per camera
            network: ControlNetwork object, only the usable tracks get a point block
            shared_intrinsics (optional): if True, cameras with the same model type share their intrinsic blocks
        """
        self.models = models
        self.network = network
        self.n_cam = len(models)

        self.track_indices = [i for i, t in enumerate(network.tracks) if t.is_usable()]
        self.points_storage = np.zeros((len(self.track_indices), 3))
        self.points = {}
        for k, track_idx in enumerate(self.track_indices):
            self.points_storage[k] = network.tracks[track_idx].xyz
            self.points[track_idx] = self.points_storage[k]

        self.poses_storage = np.zeros((self.n_cam, 6))
        self.poses = []
        self.intrinsics = []
        shared = {}
        for cam_idx, model in enumerate(models):
            blocks = model.initial_param_blocks()
            self.poses_storage[cam_idx] = blocks[0]
            self.poses.append(self.poses_storage[cam_idx])
            key = (type(model).__name__, tuple(model.get_block_sizes()))
            if shared_intrinsics and key in shared:
                self.intrinsics.append(shared[key])
            else:
                intrinsic_blocks = [np.array(b, dtype=np.float64) for b in blocks[1:]]
                self.intrinsics.append(intrinsic_blocks)
                shared[key] = intrinsic_blocks

        self.orig_poses_storage = self.poses_storage.copy()

    def camera_blocks(self, cam_idx):
        return [self.poses[cam_idx]] + self.intrinsics[cam_idx]

    def param_blocks(self, track_idx, cam_idx):
        return [self.points[track_idx]] + self.camera_blocks(cam_idx)

    def orig_pose(self, cam_idx):
        return self.orig_poses_storage[cam_idx]

    def reconstruct_cameras(self):
        """
        Cameras given by the current values of the parameter blocks
        """
        return [m.camera_from_blocks(self.poses[i], self.intrinsics[i]) for i, m in enumerate(self.models)]

    def reconstruct_points(self):
        """
        Returns the track indices and the Nx3 array with their current 3d points
        """
        return np.array(self.track_indices, dtype=int), self.points_storage.copy()
