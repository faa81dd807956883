"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements the BundleAdjustmentPipeline class
This class takes all the input data for the problem and solves it following the next blockchain
(1) Select the bundle model of each camera and triangulate the tracks without a 3d point
(2) Define the parameter blocks of the bundle adjustment
(3) Add reprojection residuals, ground constraints, reference terrain and camera regularization terms
(4) Fix the parameter blocks that are not meant to be optimized
(5) Solve, remove outlier observations and solve again for the requested number of passes
(6) Report the reprojection errors and write the refined cameras and points
"""

import os
import timeit

import numpy as np

from sat_adjust import ba_core, ba_costs, ba_models, ba_outliers, ba_params
from sat_adjust import dem_utils, geo_utils, loader
from sat_adjust.loader import flush_print


class Error(Exception):
    pass


INTRINSIC_NAME_ALIASES = {
    "focal_length": "focus",
    "focus": "focus",
    "optical_center": "center",
    "center": "center",
    "distortion": "distortion",
    "other_intrinsics": "extra",
    "extra": "extra",
}


def init_ba_config(config=None):
    """
    Initializes the configuration of the bundle adjustment pipeline

    Args:
        config: dict possibly containing values that we want to be different from default
                the default configuration is used for all parameters not specified in config

    Returns:
        output_config: dict where keys identify the parameters and values their assigned value
    """
    keys = [
        "inline_adjustments",
        "solve_intrinsics",
        "intrinsics_to_float",
        "shared_intrinsics",
        "fixed_camera_indices",
        "fix_gcp_xyz",
        "use_llh_error",
        "cost_function",
        "robust_threshold",
        "camera_weight",
        "rotation_weight",
        "translation_weight",
        "camera_position_uncertainty",
        "camera_position_uncertainty_power",
        "heights_from_dem_uncertainty",
        "reference_terrain_weight",
        "max_disp_error",
        "num_passes",
        "remove_outliers",
        "outlier_threshold",
        "big_pixel_value",
        "dem_height_error_tol",
        "max_iter",
        "save_figures",
    ]
    default_values = [
        True,
        False,
        [],
        False,
        [],
        False,
        True,
        "cauchy",
        0.5,
        0.0,
        0.0,
        0.0,
        None,
        4.0,
        0.0,
        1.0,
        -1.0,
        1,
        True,
        None,
        1000.0,
        1e-3,
        100,
        False,
    ]
    output_config = {}
    if config is not None:
        for v, k in zip(default_values, keys):
            output_config[k] = config[k] if k in config.keys() else v
    else:
        output_config = dict(zip(keys, default_values))
    return output_config


class BundleAdjustmentPipeline:
    def __init__(self, cameras, network, ba_config=None, datum=None, dem=None, disparities=None,
                 out_dir=None, camera_names=None, verbose=True):
        """
        Args:
            cameras: list of input cameras (see cam_utils), the registry of the problem
            network: ba_params.ControlNetwork with the feature tracks and ground control points
            ba_config (optional): dict with the configuration, see init_ba_config
            datum (optional): geo_utils.Datum, WGS84 by default
            dem (optional): dem_utils.GeoRaster used to constrain the heights of the tracks
            disparities (optional): list of dicts describing the reference terrain constraints, with keys
                                    "left", "right": camera indices of the stereo pair
                                    "disparity": ba_costs.DisparityInterpolator from the left to the right image
                                    "reference_xyz": Nx3 array of ECEF reference terrain points
            out_dir (optional): output directory, nothing is written if None
            camera_names (optional): list of strings used to name the output camera files
            verbose (optional): boolean, print the progress of the process if True
        """
        if len(cameras) < 1:
            raise Error("At least one camera is needed")
        self.config = init_ba_config(ba_config)
        self.registry = ba_models.CameraRegistry(cameras)
        self.network = network
        self.datum = geo_utils.Datum() if datum is None else datum
        self.dem = dem
        self.disparities = [] if disparities is None else disparities
        self.out_dir = out_dir
        self.n_cam = len(cameras)
        if camera_names is None:
            camera_names = ["cam{:03}".format(i) for i in range(self.n_cam)]
        if len(camera_names) != self.n_cam:
            raise Error("Expected {} camera names, got {}".format(self.n_cam, len(camera_names)))
        self.camera_names = camera_names
        self.verbose = verbose

        for t in network.tracks:
            for obs in t.observations:
                if obs.cam_index < 0 or obs.cam_index >= self.n_cam:
                    raise Error("Observation of camera {} but only {} cameras".format(obs.cam_index, self.n_cam))
        for cam_idx in self.config["fixed_camera_indices"]:
            if cam_idx < 0 or cam_idx >= self.n_cam:
                raise Error("Fixed camera index {} out of range".format(cam_idx))

        inline = self.config["inline_adjustments"]
        self.models = [ba_models.create_bundle_model(self.registry, i, inline) for i in range(self.n_cam)]

        if self.verbose:
            flush_print("\n")
            flush_print("Bundle Adjustment Pipeline created")
            flush_print("-------------------------------------------------------------")
            flush_print("    - output path:    {}".format(self.out_dir))
            flush_print("    - input cameras:  {}".format(self.n_cam))
            flush_print("    - input tracks:   {}".format(len(network)))
            flush_print("    - camera models:  {}".format(sorted(set(type(m).__name__ for m in self.models))))
            flush_print("\nConfiguration:")
            loader.display_dict(self.config)

    def initialize_pts3d(self):
        t0 = timeit.default_timer()
        cameras = [self.registry.get(i) for i in range(self.n_cam)]
        n_tri = self.network.triangulate(cameras)
        if self.verbose:
            flush_print("{} tracks triangulated in {:.2f} seconds".format(n_tri, timeit.default_timer() - t0))

    def define_ba_parameters(self, prev_params=None):
        """
        Build the parameter blocks from the control network
        If prev_params is given, the camera blocks start from its values but the original values
        used by the regularization terms remain those of the input cameras
        """
        p = ba_params.BAParams(self.models, self.network, shared_intrinsics=self.config["shared_intrinsics"])
        if prev_params is not None:
            p.poses_storage[:] = prev_params.poses_storage
            for blocks, prev_blocks in zip(p.intrinsics, prev_params.intrinsics):
                for b, prev_b in zip(blocks, prev_blocks):
                    b[:] = prev_b
        if len(p.track_indices) == 0 and len(self.disparities) == 0:
            raise Error("No usable tracks: at least 2 observations or a ground control point are needed")
        return p

    def add_reprojection_residuals(self, problem, p):
        loss = ba_costs.get_loss_function(self.config["cost_function"], self.config["robust_threshold"])
        self.reproj_terms = []
        for track_idx in p.track_indices:
            for obs_idx, obs in enumerate(self.network.tracks[track_idx].observations):
                model = self.models[obs.cam_index]
                cost = ba_costs.ReprojectionError(obs.pixel, obs.pixel_sigma, model, self.config["big_pixel_value"])
                blocks = p.param_blocks(track_idx, obs.cam_index)
                problem.add_residual_block(cost, loss, blocks)
                self.reproj_terms.append((track_idx, obs_idx, obs, cost, blocks))
        return len(self.reproj_terms)

    def add_gcp_or_dem_constraint(self, problem, p):
        """
        Constrain the ground control points to their known position and, if a DEM and an uncertainty are given,
        the rest of the 3d points to the DEM height below their initial position

        Returns:
            num_gcp: number of ground control points
            num_residuals: number of residual values added
        """
        num_gcp, num_residuals = 0, 0
        dem_uncertainty = self.config["heights_from_dem_uncertainty"]
        loss = ba_costs.get_loss_function(self.config["cost_function"], self.config["robust_threshold"])
        n_outside = 0
        for track_idx in p.track_indices:
            track = self.network.tracks[track_idx]
            point = p.points[track_idx]
            if track.is_gcp:
                num_gcp += 1
                if self.config["fix_gcp_xyz"]:
                    problem.set_parameter_block_constant(point)
                    continue
                sigma = track.xyz_sigma if track.xyz_sigma is not None else np.ones(3)
                if self.config["use_llh_error"]:
                    cost = ba_costs.LLHError(track.xyz, sigma, self.datum)
                else:
                    cost = ba_costs.XYZError(track.xyz, sigma)
                problem.add_residual_block(cost, None, [point])
                num_residuals += cost.num_residuals
            elif self.dem is not None and dem_uncertainty > 0:
                llh = self.datum.cartesian_to_geodetic(point)
                success, h = dem_utils.interp_dem_height(self.dem, llh[:2])
                if not success:
                    n_outside += 1
                    continue
                xyz = self.datum.geodetic_to_cartesian([llh[0], llh[1], h])
                cost = ba_costs.XYZError(xyz, dem_uncertainty)
                problem.add_residual_block(cost, loss, [point])
                num_residuals += cost.num_residuals
        if n_outside > 0:
            print("WARNING: {} points fall outside of the DEM and are not constrained by it".format(n_outside))
        if self.verbose:
            flush_print("Found {} ground control points, {} ground residuals added".format(num_gcp, num_residuals))
        return num_gcp, num_residuals

    def add_reference_terrain_residuals(self, problem, p):
        weight = self.config["reference_terrain_weight"]
        if len(self.disparities) == 0 or weight <= 0:
            return 0
        loss = ba_costs.get_loss_function(self.config["cost_function"], self.config["robust_threshold"])
        n = 0
        for d in self.disparities:
            left, right = d["left"], d["right"]
            blocks = p.camera_blocks(left) + p.camera_blocks(right)
            for xyz in np.atleast_2d(d["reference_xyz"]):
                args = [self.config["max_disp_error"], weight, xyz, d["disparity"]]
                cost = ba_costs.DispXyzError(*args, self.models[left], self.models[right],
                                             self.config["big_pixel_value"])
                problem.add_residual_block(cost, loss, blocks)
                n += 1
        if self.verbose:
            flush_print("{} reference terrain residuals added".format(n))
        return n

    def parse_position_uncertainty(self):
        u = self.config["camera_position_uncertainty"]
        if u is None:
            return None
        u = np.array(u, dtype=np.float64)
        if u.shape == (2,):
            return np.tile(u, (self.n_cam, 1))
        if u.shape != (self.n_cam, 2):
            raise Error("camera_position_uncertainty must be (horizontal, vertical) or one such pair per camera")
        return u

    def add_camera_constraints(self, problem, p):
        cam_weight = self.config["camera_weight"]
        rot_weight, trans_weight = self.config["rotation_weight"], self.config["translation_weight"]
        uncertainty = self.parse_position_uncertainty()
        n_obs = self.network.observations_per_camera(self.n_cam)
        for cam_idx in range(self.n_cam):
            if cam_idx in self.config["fixed_camera_indices"]:
                continue
            pose, orig_pose = p.poses[cam_idx], p.orig_pose(cam_idx)
            if cam_weight > 0:
                problem.add_residual_block(ba_costs.CamError(orig_pose, cam_weight), None, [pose])
            if rot_weight > 0 or trans_weight > 0:
                problem.add_residual_block(ba_costs.RotTransError(orig_pose, rot_weight, trans_weight), None, [pose])
            if uncertainty is not None:
                orig_ctr = ba_models.pose_center(self.models[cam_idx], orig_pose)
                args = [orig_ctr, orig_pose, uncertainty[cam_idx], n_obs[cam_idx], self.datum]
                cost = ba_costs.CamUncertaintyError(*args, power=self.config["camera_position_uncertainty_power"])
                problem.add_residual_block(cost, None, [pose])

    def fix_parameters(self, problem, p):
        fixed = set(self.config["fixed_camera_indices"])
        names = [INTRINSIC_NAME_ALIASES.get(n, n) for n in self.config["intrinsics_to_float"]]
        float_all = len(names) == 0 or "all" in names
        for cam_idx in range(self.n_cam):
            if cam_idx in fixed:
                problem.set_parameter_block_constant(p.poses[cam_idx])
            block_names = self.models[cam_idx].intrinsic_block_names
            for name, block in zip(block_names, p.intrinsics[cam_idx]):
                if cam_idx in fixed or not self.config["solve_intrinsics"] or not (float_all or name in names):
                    problem.set_parameter_block_constant(block)
        # shared intrinsic blocks float if any camera using them floats
        if self.config["solve_intrinsics"] and self.config["shared_intrinsics"]:
            for cam_idx in set(range(self.n_cam)) - fixed:
                block_names = self.models[cam_idx].intrinsic_block_names
                for name, block in zip(block_names, p.intrinsics[cam_idx]):
                    if float_all or name in names:
                        problem.set_parameter_block_variable(block)

    def build_problem(self, p):
        problem = ba_core.Problem()
        self.add_reprojection_residuals(problem, p)
        self.num_gcp, self.num_ground_residuals = self.add_gcp_or_dem_constraint(problem, p)
        self.add_reference_terrain_residuals(problem, p)
        self.add_camera_constraints(problem, p)
        self.fix_parameters(problem, p)
        return problem

    def compute_reprojection_errors(self):
        """
        Reprojection error in pixels of each observation, NaN where the point cannot be projected

        Returns:
            err: vector with the error of each observation
            obs_keys: list of (track index, observation index) pairs
            cam_ind: vector with the camera index of each observation
        """
        err, obs_keys, cam_ind = [], [], []
        big = self.config["big_pixel_value"]
        for track_idx, obs_idx, obs, cost, blocks in self.reproj_terms:
            r = cost(blocks)
            e = np.nan if np.all(r == big) else np.linalg.norm(r * obs.pixel_sigma)
            err.append(e)
            obs_keys.append((track_idx, obs_idx))
            cam_ind.append(obs.cam_index)
        return np.array(err), obs_keys, np.array(cam_ind, dtype=int)

    def report_errors_per_camera(self, err_init, err_ba, cam_ind):
        if not self.verbose:
            return
        valid = np.isfinite(err_init) & np.isfinite(err_ba)
        if np.any(valid):
            to_print = [np.mean(err_init[valid]), np.median(err_init[valid])]
            flush_print("Reprojection error before BA (mean / median): {:.2f} / {:.2f}".format(*to_print))
            to_print = [np.mean(err_ba[valid]), np.median(err_ba[valid])]
            flush_print("Reprojection error after  BA (mean / median): {:.2f} / {:.2f}\n".format(*to_print))
        for cam_idx in range(self.n_cam):
            mask = valid & (cam_ind == cam_idx)
            if not np.any(mask):
                flush_print("    - cam {:3} - no valid observations".format(cam_idx))
                continue
            to_print = [cam_idx, np.sum(mask), np.mean(err_init[mask]), np.mean(err_ba[mask])]
            flush_print("    - cam {:3} - {:5} obs - (mean before / mean after): {:.2f} / {:.2f}".format(*to_print))
        n_invalid = np.sum(~np.isfinite(err_ba))
        if n_invalid > 0:
            print("WARNING: {} observations could not be projected after the optimization".format(n_invalid))

    def run_pass(self, pass_idx, prev_params=None):
        t0 = timeit.default_timer()
        if self.verbose:
            flush_print("\nBundle adjustment pass {} of {}".format(pass_idx + 1, self.config["num_passes"]))
        p = self.define_ba_parameters(prev_params)
        problem = self.build_problem(p)
        err_init, _, _ = self.compute_reprojection_errors()
        if self.verbose:
            to_print = [len(p.track_indices), len(self.reproj_terms), problem.num_residuals()]
            flush_print("{} tracks, {} observations, {} residuals".format(*to_print))
        summary = problem.solve({"max_iter": self.config["max_iter"]})
        err_ba, obs_keys, cam_ind = self.compute_reprojection_errors()
        if self.verbose:
            to_print = [summary.initial_cost, summary.final_cost, summary.iterations]
            flush_print("Cost {:.6e} -> {:.6e} ({} iterations)".format(*to_print))
            flush_print("Pass completed in {:.2f} seconds".format(timeit.default_timer() - t0))
        return p, summary, err_init, err_ba, obs_keys, cam_ind

    def update_network_points(self, p):
        for track_idx in p.track_indices:
            track = self.network.tracks[track_idx]
            if not track.is_gcp:
                track.xyz = p.points[track_idx].copy()

    def clean_outlier_observations(self, err, obs_keys):
        start = timeit.default_timer()
        err = np.where(np.isfinite(err), err, self.config["big_pixel_value"])
        args = [self.network, obs_keys, err, self.n_cam, self.config["outlier_threshold"], self.verbose]
        self.network, n_rm = ba_outliers.rm_outliers(*args)
        elapsed_time = timeit.default_timer() - start
        if self.verbose:
            flush_print("Removal of outliers based on reprojection error took {:.2f} seconds".format(elapsed_time))
        return n_rm

    def save_corrected_cameras(self):
        out_dir = os.path.join(self.out_dir, "cameras")
        for cam_idx, cam in enumerate(self.corrected_cameras):
            model = self.models[cam_idx]
            cam_id = loader.get_id(self.camera_names[cam_idx])
            if isinstance(model, ba_models.AdjustedCameraBundleModel):
                fname = os.path.join(out_dir, cam_id + ".adjust")
            elif isinstance(model, ba_models.PinholeBundleModel):
                fname = os.path.join(out_dir, cam_id + ".tsai")
            else:
                fname = os.path.join(out_dir, cam_id + ".json")
            loader.save_camera(fname, cam)
        flush_print("Bundle adjusted cameras written at {}".format(out_dir))

    def save_residuals(self, fname, err, obs_keys, observations):
        rows = []
        for (track_idx, _), e, obs in zip(obs_keys, err, observations):
            rows.append([obs.cam_index, track_idx, obs.pixel[0], obs.pixel[1], e])
        header = "cam_index, track_index, col, row, reprojection_error"
        loader.write_csv(fname, np.array(rows).reshape(-1, 5), header=header)

    def save_pointmap(self, fname, err, obs_keys):
        """
        One line per track: lon, lat, height above the datum, mean reprojection error and number of observations
        """
        per_track = {}
        for (track_idx, _), e in zip(obs_keys, err):
            per_track.setdefault(track_idx, []).append(e)
        rows = []
        for track_idx, xyz in zip(*self.corrected_points):
            lon, lat, h = self.datum.cartesian_to_geodetic(xyz)
            errs = np.array(per_track.get(track_idx, []))
            errs = errs[np.isfinite(errs)]
            mean_err = np.mean(errs) if errs.size > 0 else np.nan
            rows.append([lon, lat, h, mean_err, errs.size])
        header = "lon, lat, height_above_datum, mean_residual, num_observations"
        loader.write_csv(fname, np.array(rows).reshape(-1, 5), header=header)

    def save_outputs(self):
        os.makedirs(self.out_dir, exist_ok=True)
        self.save_corrected_cameras()
        args = [self.init_e, self.init_obs_keys, self.init_observations]
        self.save_residuals(os.path.join(self.out_dir, "residuals_initial.csv"), *args)
        args = [self.ba_e, self.obs_keys, self.observations]
        self.save_residuals(os.path.join(self.out_dir, "residuals_final.csv"), *args)
        self.save_pointmap(os.path.join(self.out_dir, "pointmap.csv"), self.ba_e, self.obs_keys)
        if self.config["save_figures"]:
            img_path = os.path.join(self.out_dir, "ba_figures/error_histograms.png")
            init_e, ba_e = self.init_e[np.isfinite(self.init_e)], self.ba_e[np.isfinite(self.ba_e)]
            if init_e.size > 0 and ba_e.size > 0:
                ba_core.save_histogram_of_errors(img_path, init_e, ba_e)
        flush_print("Bundle adjustment outputs written at {}\n".format(self.out_dir))

    def run(self):
        """
        this function runs the entire bundle adjustment pipeline

        Returns:
            results: dict with the refined cameras and points, the solver summaries and the reprojection errors
        """
        pipeline_start = timeit.default_timer()
        self.initialize_pts3d()

        if self.config["num_passes"] < 1:
            raise Error("At least one bundle adjustment pass is needed")
        p, summaries, n_outliers = None, [], 0
        for pass_idx in range(self.config["num_passes"]):
            p, summary, err_init, err_ba, obs_keys, cam_ind = self.run_pass(pass_idx, prev_params=p)
            summaries.append(summary)
            observations = [term[2] for term in self.reproj_terms]
            if pass_idx == 0:
                self.init_e = err_init
                self.init_obs_keys, self.init_observations = obs_keys, observations
            self.update_network_points(p)
            last_pass = pass_idx == self.config["num_passes"] - 1
            if not last_pass and self.config["remove_outliers"]:
                n_outliers += self.clean_outlier_observations(err_ba, obs_keys)

        self.ba_e, self.obs_keys, self.cam_ind, self.observations = err_ba, obs_keys, cam_ind, observations
        self.report_errors_per_camera(self.init_e_for_last_pass(), self.ba_e, self.cam_ind)
        self.ba_params = p
        self.corrected_cameras = p.reconstruct_cameras()
        self.corrected_points = p.reconstruct_points()

        if self.out_dir is not None:
            self.save_outputs()

        pipeline_time = loader.get_time_in_hours_mins_secs(timeit.default_timer() - pipeline_start)
        if self.verbose:
            flush_print("\nBundle adjustment pipeline completed in {}\n".format(pipeline_time))

        valid = np.isfinite(self.ba_e)
        self.results = {
            "cameras": self.corrected_cameras,
            "track_indices": self.corrected_points[0],
            "points": self.corrected_points[1],
            "summaries": summaries,
            "converged": all(s.converged for s in summaries),
            "err_init": self.init_e,
            "err_ba": self.ba_e,
            "mean_err_ba": float(np.mean(self.ba_e[valid])) if np.any(valid) else np.nan,
            "num_gcp": self.num_gcp,
            "num_ground_residuals": self.num_ground_residuals,
            "num_outliers": n_outliers,
        }
        return self.results

    def init_e_for_last_pass(self):
        """
        Initial errors of the observations that survived the outlier removal
        """
        init = {id(obs): e for obs, e in zip(self.init_observations, self.init_e)}
        return np.array([init.get(id(obs), np.nan) for obs in self.observations])


def solve(cameras, network, ba_config=None, **kwargs):
    """
    Bundle adjust a set of cameras and a control network

    Args:
        cameras: list of input cameras
        network: ba_params.ControlNetwork
        ba_config (optional): dict with the configuration, see init_ba_config
        kwargs: extra arguments of BundleAdjustmentPipeline (datum, dem, disparities, out_dir, camera_names, verbose)

    Returns:
        results: dict, see BundleAdjustmentPipeline.run
    """
    return BundleAdjustmentPipeline(cameras, network, ba_config, **kwargs).run()
