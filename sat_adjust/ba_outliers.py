"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements a series of functions dedicated to the suppression of
outlier feature track observations according to reprojection error
"""

import numpy as np

from sat_adjust import ba_params


def get_elbow_value(err, max_outliers_percent=20):
    """
    Compute the elbow value of an input function that is expected to follow a L-shape
    We compute the elbow value as the point furthest away between the segment going from min to max values
    Inspired by https://stackoverflow.com/questions/2018178/finding-the-best-trade-off-point-on-a-curve

    Args:
        err: vector of values (i.e. input function)
        max_outliers_percent: the maximum percentage of outliers that is expected in the upper part of the function

    Returns:
        elbow_value: scalar with the elbow value of the function
        success: success is False if elbow_value falls bellow the i-th percentile,
                 where i = 100 - max_outliers_percent; otherwise it is True
                 success = False implies that the input function is likely to not follow an L-shape
    """
    values = np.sort(err).tolist()
    n_pts = len(values)
    if n_pts < 3 or values[-1] == values[0]:
        return values[-1], False
    all_coord = np.vstack((range(n_pts), values)).T

    # get vector between first and last point - this is the line
    line_vec = all_coord[-1] - all_coord[0]
    line_vec_norm = line_vec / np.sqrt(np.sum(line_vec ** 2))

    # find the distance from each point to the line
    vec_from_first = all_coord - all_coord[0]
    scalar_product = np.sum(vec_from_first * np.tile(line_vec_norm, (n_pts, 1)), axis=1)
    vec_from_first_parallel = np.outer(scalar_product, line_vec_norm)
    vec_to_line = vec_from_first - vec_from_first_parallel
    dist_to_line = np.sqrt(np.sum(vec_to_line ** 2, axis=1))

    # the elbow point is the point with max distance value
    elbow_value = values[np.argmax(dist_to_line)]
    success = False if (elbow_value < np.percentile(err, 100 - max_outliers_percent)) else True
    return elbow_value, success


def compute_cam_thresholds(err, cam_ind, n_cam, predef_thr=None, min_thr=1.0):
    """
    Reprojection error threshold of each camera, set automatically with the elbow method
    unless a predefined threshold is given

    Args:
        err: N-valued vector containing the reprojection error of each of the N track observations
        cam_ind: N-valued vector with the camera index of each observation
        n_cam: number of cameras
    """
    cam_thr = []
    for cam_idx in range(n_cam):
        if predef_thr is not None:
            cam_thr.append(np.round(float(predef_thr), 2))
            continue
        cam_err = err[cam_ind == cam_idx]
        if cam_err.size == 0:
            cam_thr.append(np.inf)
            continue
        elbow_value, success = get_elbow_value(cam_err)
        # no L-shape, all observations of the camera are kept
        cam_thr.append(np.round(max(elbow_value, min_thr), 2) if success else np.inf)
    return cam_thr


def rm_outliers(network, obs_keys, err, n_cam, predef_thr=None, verbose=False):
    """
    Remove outlier feature track observations based on their reprojection error
    The observations of ground control points are kept

    Args:
        network: ControlNetwork object used to compute err
        obs_keys: list of (track index, observation index) pairs, one per entry of err
        err: N-valued vector containing the reprojection error of each of the N track observations
        n_cam: number of cameras

    Returns:
        new_network: ControlNetwork object without the outlier observations
        n_detected_outliers: integer with the total amount of outlier observations that were found
    """
    err = np.asarray(err)
    cam_ind = np.array([network.tracks[t].observations[o].cam_index for t, o in obs_keys], dtype=int)
    cam_thr = compute_cam_thresholds(err, cam_ind, n_cam, predef_thr=predef_thr)

    to_remove = set()
    for (t, o), e, c in zip(obs_keys, err, cam_ind):
        if e > cam_thr[c] and not network.tracks[t].is_gcp:
            to_remove.add((t, o))

    tracks = []
    for t, track in enumerate(network.tracks):
        observations = [obs for o, obs in enumerate(track.observations) if (t, o) not in to_remove]
        tracks.append(ba_params.Track(track.xyz, observations, track.is_gcp, track.xyz_sigma))
    new_network = ba_params.ControlNetwork(tracks)

    if verbose:
        n_obs_in, n_obs_rm = len(obs_keys), len(to_remove)
        n_tracks_in = sum(t.is_usable() for t in network.tracks)
        n_tracks_rm = n_tracks_in - sum(t.is_usable() for t in new_network.tracks)
        print("Reprojection error threshold per camera: {} px".format(cam_thr))
        args = [n_obs_rm, n_obs_rm / max(n_obs_in, 1) * 100, n_tracks_rm, n_tracks_rm / max(n_tracks_in, 1) * 100]
        print("Deleted {} observations ({:.2f}%) and {} tracks ({:.2f}%)".format(*args))

    return new_network, len(to_remove)
