"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements the alignment of a source point cloud to a reference point cloud
Both clouds are loaded restricted to their overlapping lon-lat box, shifted close to the origin,
registered with the iterative closest point algorithm, and the resulting transform is applied
to the full resolution source cloud
"""

import os
import timeit

import numpy as np
import rasterio
from scipy.spatial import cKDTree
from shapely.geometry import box

from sat_adjust import ba_rotate, dem_utils, geo_utils, loader
from sat_adjust.loader import flush_print


class Error(Exception):
    pass


ALIGNMENT_METHODS = ["point-to-point", "similarity-point-to-point", "point-to-plane"]


def init_pc_align_config(config=None):
    """
    Initializes the configuration of the point cloud alignment

    Args:
        config: dict possibly containing values that we want to be different from default
                the default configuration is used for all parameters not specified in config

    Returns:
        output_config: dict where keys identify the parameters and values their assigned value
    """
    keys = [
        "alignment_method",
        "max_displacement",
        "num_iterations",
        "outlier_ratio",
        "max_num_reference_points",
        "max_num_source_points",
        "num_sample_pts_for_bbox",
        "diff_rotation_error",
        "diff_translation_error",
        "compute_translation_only",
        "initial_transform",
        "datum",
        "csv_format",
        "csv_crs",
        "dem",
        "save_transformed_source",
    ]
    default_values = [
        "point-to-point",
        -1.0,
        1000,
        0.75,
        100000000,
        100000,
        100000,
        1e-8,
        1e-3,
        False,
        None,
        "WGS_1984",
        "xyz",
        None,
        None,
        True,
    ]
    output_config = {}
    if config is not None:
        for v, k in zip(default_values, keys):
            output_config[k] = config[k] if k in config.keys() else v
    else:
        output_config = dict(zip(keys, default_values))
    if output_config["alignment_method"] not in ALIGNMENT_METHODS:
        raise Error("Unknown alignment method: {}".format(output_config["alignment_method"]))
    if not 0 < output_config["outlier_ratio"] <= 1:
        raise Error("The outlier ratio must be in (0, 1]")
    return output_config


def is_raster(file_name):
    return os.path.splitext(file_name)[1].lower() in [".tif", ".tiff"]


def csv_to_ecef(values, csv_format, datum, csv_crs=None, dem=None):
    """
    Convert the first columns of a csv file to ECEF coordinates

    Args:
        values: NxK array with the csv values
        csv_format: "xyz" (ECEF), "llh" (lon, lat, height), "ll" (lon, lat, height taken from dem)
                    or "proj" (projected x, y in csv_crs and height above the datum)

    Returns:
        xyz: Nx3 array of ECEF points
        valid: N-valued boolean array, False for the points that could not be converted
    """
    valid = np.ones(values.shape[0], dtype=bool)
    if csv_format == "xyz":
        return values[:, :3].copy(), valid
    if csv_format == "llh":
        return datum.geodetic_to_cartesian(values[:, :3]), valid
    if csv_format == "ll":
        if dem is None:
            raise Error("A DEM is needed to read lon-lat csv files without heights")
        heights = dem.height_at_lonlat(values[:, 0], values[:, 1])
        valid = np.isfinite(heights)
        llh = np.vstack([values[:, 0], values[:, 1], np.where(valid, heights, 0.0)]).T
        return datum.geodetic_to_cartesian(llh), valid
    if csv_format == "proj":
        if csv_crs is None:
            raise Error("The csv coordinate system is needed to read projected csv files")
        proj = geo_utils.ProjectionTransform(csv_crs)
        return geo_utils.proj_to_ecef(proj, datum, values[:, :3]), valid
    raise Error("Unknown csv format: {}".format(csv_format))


def ecef_to_csv(xyz, csv_format, datum, csv_crs=None):
    if csv_format == "xyz":
        return xyz
    if csv_format in ["llh", "ll"]:
        llh = datum.cartesian_to_geodetic(xyz)
        return llh if csv_format == "llh" else llh[:, :2]
    return geo_utils.ecef_to_proj(geo_utils.ProjectionTransform(csv_crs), datum, xyz)


def read_cloud_points(file_name, datum, csv_format="xyz", csv_crs=None, dem=None):
    """
    Read all valid points of a cloud in ECEF coordinates
    The cloud can be a csv file, a DEM (single band raster) or a point cloud raster (3 or more bands)
    """
    if not os.path.exists(file_name):
        raise Error("Point cloud not found: {}".format(file_name))
    if not is_raster(file_name):
        values = loader.read_csv(file_name, min_cols=2 if csv_format == "ll" else 3)
        xyz, valid = csv_to_ecef(values, csv_format, datum, csv_crs, dem)
        valid &= np.any(xyz != 0, axis=1)
        return xyz[valid]
    if count_bands(file_name) < 3:
        dem_cloud = dem_utils.GeoRaster.from_file(file_name, datum=datum)
        rows, cols = np.mgrid[0 : dem_cloud.height, 0 : dem_cloud.width]
        rows, cols = rows.ravel(), cols.ravel()
        heights = dem_cloud.data.ravel()
        valid = np.isfinite(heights)
        lons, lats = dem_cloud.pixel_to_lonlat(cols[valid], rows[valid])
        return datum.geodetic_to_cartesian(np.vstack([lons, lats, heights[valid]]).T)
    cloud, _ = loader.read_point_cloud_raster(file_name)
    xyz = cloud[:, :, :3].reshape(-1, 3)
    return xyz[np.any(xyz != 0, axis=1)]


def count_bands(file_name):
    with rasterio.open(file_name) as f:
        return f.count


def load_cloud(file_name, num_points_to_load, lonlat_box=None, calc_shift=False, shift=None,
               datum=None, csv_format="xyz", csv_crs=None, dem=None, verbose=True):
    """
    Load a point cloud in ECEF coordinates, optionally restricted to a lon-lat box and shifted

    Args:
        file_name: csv file, DEM or point cloud raster
        num_points_to_load: maximum number of points, a random subset is taken if there are more
        lonlat_box (optional): (min_lon, min_lat, max_lon, max_lat), points outside are discarded
        calc_shift (optional): if True, the shift is the first point of the cloud
        shift (optional): 3-valued vector subtracted from all points (ignored if calc_shift is True)
        datum (optional): geo_utils.Datum, WGS84 by default

    Returns:
        points: Nx3 array with the points minus the shift
        shift: 3-valued vector, zeros if no shift was used
    """
    datum = geo_utils.Datum() if datum is None else datum
    xyz = read_cloud_points(file_name, datum, csv_format, csv_crs, dem)
    n_in = xyz.shape[0]
    if lonlat_box is not None and n_in > 0:
        llh = datum.cartesian_to_geodetic(xyz)
        min_lon, min_lat, max_lon, max_lat = lonlat_box
        inside = (llh[:, 0] >= min_lon) & (llh[:, 0] <= max_lon) & (llh[:, 1] >= min_lat) & (llh[:, 1] <= max_lat)
        xyz = xyz[inside]
    if xyz.shape[0] > num_points_to_load:
        rng = np.random.default_rng(0)
        xyz = xyz[np.sort(rng.choice(xyz.shape[0], num_points_to_load, replace=False))]
    if xyz.shape[0] == 0:
        raise Error("No valid points were loaded from {}".format(file_name))
    if calc_shift:
        shift = xyz[0].copy()
    shift = np.zeros(3) if shift is None else np.asarray(shift, dtype=np.float64)
    if verbose:
        flush_print("Loaded {} of {} points from {}".format(xyz.shape[0], n_in, file_name))
    return xyz - shift, shift


def calc_extended_lonlat_bbox(file_name, num_sample_pts, max_disp, transform=None, datum=None,
                              csv_format="xyz", csv_crs=None, dem=None):
    """
    Lon-lat bounding box of a sample of the cloud, extended outwards by the maximum displacement
    Each sample point is displaced by max_disp meters along the 3 ECEF axes in both directions

    Returns:
        out_box: box of the cloud, (min_lon, min_lat, max_lon, max_lat)
        trans_out_box: box of the cloud after applying the transform
    """
    datum = geo_utils.Datum() if datum is None else datum
    pts, _ = load_cloud(file_name, num_sample_pts, datum=datum, csv_format=csv_format, csv_crs=csv_crs,
                        dem=dem, verbose=False)
    transform = np.eye(4) if transform is None else transform
    offsets = np.vstack([np.zeros(3), max_disp * np.eye(3), -max_disp * np.eye(3)])

    def extended_box(p):
        ext = (p[:, np.newaxis, :] + offsets[np.newaxis, :, :]).reshape(-1, 3)
        return geo_utils.lonlat_bbox(datum.cartesian_to_geodetic(ext))

    return extended_box(pts), extended_box(apply_transform(transform, pts))


def lonlat_boxes_intersection(box1, box2):
    """
    Intersection of two lon-lat boxes (min_lon, min_lat, max_lon, max_lat), None if they do not overlap
    """
    inter = box(*box1).intersection(box(*box2))
    if inter.is_empty or inter.area == 0:
        return None
    return inter.bounds


def transform_lonlat_box(lonlat_box, T, datum, height=0.0):
    """
    Lon-lat box containing the corners of the input box after applying the transform T
    """
    min_lon, min_lat, max_lon, max_lat = lonlat_box
    corners = np.array([[lon, lat, height] for lon in [min_lon, max_lon] for lat in [min_lat, max_lat]])
    xyz = apply_transform(T, datum.geodetic_to_cartesian(corners))
    return geo_utils.lonlat_bbox(datum.cartesian_to_geodetic(xyz))


def calc_mean(errs, length):
    """
    Mean of the first length values of errs
    """
    errs = np.asarray(errs)[: int(length)]
    if errs.size == 0:
        return 0.0
    return float(np.mean(errs))


def calc_stddev(errs, mean):
    errs = np.asarray(errs)
    if errs.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((errs - mean) ** 2)))


def calc_smallest_errors_means(errs, percents=(25, 50, 75, 100)):
    """
    Mean of the smallest errors, for each given percentage of the errors

    Returns:
        means: dict with the percentages as keys
    """
    errs = np.sort(np.asarray(errs))
    return {p: calc_mean(errs, int(round(p / 100.0 * errs.size))) for p in percents}


def apply_shift(T, shift):
    """
    Consider a 4x4 matrix T which implements a rotation + translation y = A*x + b
    and a point s close to the points x, which we want to make the new origin.
    In the coordinates (x2 = x - s, y2 = y - s) the transform becomes y2 = A*x2 + b + A*s - s,
    which is encoded into the output 4x4 matrix T2
    """
    T2 = np.array(T, dtype=np.float64).copy()
    s = np.asarray(shift, dtype=np.float64)
    T2[:3, 3] = T2[:3, :3] @ s + T2[:3, 3] - s
    return T2


def apply_transform(T, pts):
    """
    Apply a 4x4 transform to a 3-valued vector or to the rows of a Nx3 array
    All-zero points are invalid and are returned untouched
    """
    pts = np.asarray(pts, dtype=np.float64)
    single = pts.ndim == 1
    pts = np.atleast_2d(pts)
    out = pts @ T[:3, :3].T + T[:3, 3]
    invalid = np.all(pts == 0, axis=1)
    out[invalid] = pts[invalid]
    return out[0] if single else out


def transform_points(T, pts):
    """
    Apply a 4x4 transform to the rows of a Nx3 array, with no special meaning for zero points
    Used on centered clouds, where the origin is a valid point
    """
    return pts @ T[:3, :3].T + T[:3, 3]


def calc_max_displacement(source, trans_source):
    """
    Maximum distance between the points of a cloud and their transformed counterparts
    """
    if len(source) == 0:
        return 0.0
    return float(np.max(np.linalg.norm(trans_source - source, axis=1)))


def calc_translation_vec(source, trans_source, shift, datum):
    """
    Translation between the centers of a cloud and its transformed version, in ECEF, NED and lon-lat-height

    Args:
        source, trans_source: Nx3 arrays with the points before and after the transform (minus shift)
        shift: 3-valued vector from the planet center to the current origin
        datum: geo_utils.Datum

    Returns:
        dict with keys source_ctr_vec, source_ctr_llh, trans_xyz, trans_ned, trans_llh, ned_to_ecef
    """
    source_ctr_vec = np.mean(source, axis=0) + shift
    trans_source_ctr_vec = np.mean(trans_source, axis=0) + shift
    source_ctr_llh = datum.cartesian_to_geodetic(source_ctr_vec)
    trans_source_ctr_llh = datum.cartesian_to_geodetic(trans_source_ctr_vec)
    trans_xyz = trans_source_ctr_vec - source_ctr_vec
    trans_llh = trans_source_ctr_llh - source_ctr_llh
    trans_llh[0] = (trans_llh[0] + 180.0) % 360.0 - 180.0
    ned_to_ecef = datum.ned_to_ecef_matrix(source_ctr_llh)
    trans_ned = ned_to_ecef.T @ trans_xyz
    return {
        "source_ctr_vec": source_ctr_vec,
        "source_ctr_llh": source_ctr_llh,
        "trans_xyz": trans_xyz,
        "trans_ned": trans_ned,
        "trans_llh": trans_llh,
        "ned_to_ecef": ned_to_ecef,
    }


def fit_rigid_transform(src, dst, with_scale=False):
    """
    Least squares rotation, translation (and scale) mapping src onto dst (Kabsch / Umeyama)

    Returns:
        T: 4x4 transform with dst ~ s * R * src + t
    """
    mu_src, mu_dst = np.mean(src, axis=0), np.mean(dst, axis=0)
    X, Y = src - mu_src, dst - mu_dst
    Sigma_xy = (Y.T @ X) / src.shape[0]
    U, D, Vt = np.linalg.svd(Sigma_xy)
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1
    R = U @ S @ Vt
    s = 1.0
    if with_scale:
        var_src = np.sum(X ** 2) / src.shape[0]
        if var_src > 0:
            s = np.trace(np.diag(D) @ S) / var_src
    T = np.eye(4)
    T[:3, :3] = s * R
    T[:3, 3] = mu_dst - s * R @ mu_src
    return T


def fit_translation(src, dst):
    T = np.eye(4)
    T[:3, 3] = np.mean(dst - src, axis=0)
    return T


def estimate_normals(pts, tree, k=10):
    """
    Normal of each point, the direction of least variance of its k nearest neighbors
    """
    k = min(k, pts.shape[0])
    _, idx = tree.query(pts, k=k)
    neigh = pts[idx.reshape(pts.shape[0], -1)]
    neigh = neigh - neigh.mean(axis=1, keepdims=True)
    cov = np.einsum("nki,nkj->nij", neigh, neigh)
    _, vecs = np.linalg.eigh(cov)
    return vecs[:, :, 0]


def fit_point_to_plane(src, dst, normals):
    """
    Linearized point to plane step: small rotation w and translation t minimizing sum(((R p + t - q) . n)^2)
    """
    A = np.hstack([np.cross(src, normals), normals])
    b = np.sum((dst - src) * normals, axis=1)
    x, _, _, _ = np.linalg.lstsq(A, b, rcond=None)
    T = np.eye(4)
    T[:3, :3] = ba_rotate.axis_angle_to_R(x[:3])
    T[:3, 3] = x[3:]
    return T


def icp(source, reference, config=None, initial_transform=None, verbose=True):
    """
    Iterative closest point registration of source onto reference

    Args:
        source: Nx3 array with the points to align (centered coordinates)
        reference: Mx3 array with the reference points (same centered coordinates)
        config (optional): dict with the alignment configuration, see init_pc_align_config
        initial_transform (optional): 4x4 initial guess, in the centered coordinates

    Returns:
        T: 4x4 transform mapping source onto reference
        n_iter: number of iterations run
        converged: boolean, True if the convergence thresholds were reached
    """
    config = init_pc_align_config(config)
    T = np.eye(4) if initial_transform is None else np.array(initial_transform, dtype=np.float64)
    tree = cKDTree(reference)
    method = config["alignment_method"]
    normals = estimate_normals(reference, tree) if method == "point-to-plane" else None
    max_disp = config["max_displacement"]

    converged, n_iter = False, 0
    for n_iter in range(1, config["num_iterations"] + 1):
        src_t = transform_points(T, source)
        dist, idx = tree.query(src_t)
        mask = np.ones(dist.shape, dtype=bool) if max_disp <= 0 else dist <= max_disp
        if np.sum(mask) < 3:
            raise Error("Less than 3 points of the source cloud are within the max displacement of the reference")
        thr = np.quantile(dist[mask], config["outlier_ratio"])
        mask &= dist <= thr
        src_m, dst_m = src_t[mask], reference[idx[mask]]
        if config["compute_translation_only"]:
            dT = fit_translation(src_m, dst_m)
        elif method == "point-to-plane":
            dT = fit_point_to_plane(src_m, dst_m, normals[idx[mask]])
        else:
            dT = fit_rigid_transform(src_m, dst_m, with_scale=method == "similarity-point-to-point")
        T = dT @ T

        A = dT[:3, :3] / np.cbrt(np.linalg.det(dT[:3, :3]))
        rot_err = np.linalg.norm(ba_rotate.axis_angle_from_R(A))
        trans_err = np.linalg.norm(dT[:3, 3])
        if rot_err < config["diff_rotation_error"] and trans_err < config["diff_translation_error"]:
            converged = True
            break
    if verbose:
        flush_print("ICP {} after {} iterations".format("converged" if converged else "stopped", n_iter))
    if not converged:
        print("WARNING: ICP reached the maximum number of iterations without converging")
    return T, n_iter, converged


def compute_errors(source, reference_tree, T=None):
    """
    Distance from each (transformed) source point to its closest reference point
    """
    pts = source if T is None else transform_points(T, source)
    dist, _ = reference_tree.query(pts)
    return dist


def save_errors(fname, pts, errs, shift, datum):
    """
    Write the alignment errors as lon, lat, height above datum and error
    """
    llh = datum.cartesian_to_geodetic(pts + shift)
    header = "lon, lat, height_above_datum, error"
    loader.write_csv(fname, np.hstack([llh, np.asarray(errs)[:, np.newaxis]]), header=header)


def save_trans_point_cloud(input_file, output_file, T, datum=None, csv_format="xyz", csv_crs=None, dem=None):
    """
    Apply a transform to the whole input cloud (not just the points used for the alignment) and save it
    Csv files keep their format. Point cloud rasters keep all bands and the invalid (zero) points.
    DEMs are written as 3-band ECEF point cloud rasters

    Returns:
        output_file: the path where the cloud was written (the extension may be changed)
    """
    datum = geo_utils.Datum() if datum is None else datum
    if not is_raster(input_file):
        values = loader.read_csv(input_file, min_cols=2 if csv_format == "ll" else 3, keep_all_cols=True)
        xyz, valid = csv_to_ecef(values, csv_format, datum, csv_crs, dem)
        out = values.copy()
        trans = ecef_to_csv(apply_transform(T, xyz[valid]), csv_format, datum, csv_crs)
        out[np.flatnonzero(valid)[:, np.newaxis], np.arange(trans.shape[1])] = trans
        loader.write_csv(output_file, out[valid])
        return output_file
    output_file = os.path.splitext(output_file)[0] + ".tif"
    if count_bands(input_file) >= 3:
        cloud, profile = loader.read_point_cloud_raster(input_file)
        xyz = cloud[:, :, :3].reshape(-1, 3)
        cloud[:, :, :3] = apply_transform(T, xyz).reshape(cloud.shape[0], cloud.shape[1], 3)
        loader.write_point_cloud_raster(output_file, cloud, profile)
        return output_file
    dem_cloud = dem_utils.GeoRaster.from_file(input_file, datum=datum)
    rows, cols = np.mgrid[0 : dem_cloud.height, 0 : dem_cloud.width]
    lons, lats = dem_cloud.pixel_to_lonlat(cols.ravel(), rows.ravel())
    heights = dem_cloud.data.ravel()
    valid = np.isfinite(heights)
    xyz = np.zeros((heights.size, 3))
    xyz[valid] = datum.geodetic_to_cartesian(np.vstack([lons[valid], lats[valid], heights[valid]]).T)
    cloud = apply_transform(T, xyz).reshape(dem_cloud.height, dem_cloud.width, 3)
    loader.write_point_cloud_raster(output_file, cloud)
    return output_file


def align(reference, source, config=None, out_dir=None, verbose=True):
    """
    Align a source point cloud to a reference point cloud

    Args:
        reference: path to the reference cloud (csv, DEM or point cloud raster)
        source: path to the cloud to align
        config (optional): dict with the alignment configuration, see init_pc_align_config
        out_dir (optional): output directory, nothing is written if None

    Returns:
        results: dict with the 4x4 transform in ECEF coordinates, its inverse, and the error statistics
    """
    t0 = timeit.default_timer()
    config = init_pc_align_config(config)
    if verbose:
        flush_print("\nPoint cloud alignment configuration:")
        loader.display_dict(config)
    datum = config["datum"] if isinstance(config["datum"], geo_utils.Datum) else geo_utils.Datum(config["datum"])
    dem = config["dem"]
    if isinstance(dem, str):
        dem = dem_utils.load_interpolation_ready_dem(dem, datum=datum)
    csv_args = {"csv_format": config["csv_format"], "csv_crs": config["csv_crs"], "dem": dem}
    init_T = np.eye(4) if config["initial_transform"] is None else np.array(config["initial_transform"])
    if init_T.shape != (4, 4):
        raise Error("The initial transform must be a 4x4 matrix")
    max_disp = config["max_displacement"]

    # filter: keep the points of each cloud in the box where they may overlap
    ref_box, src_box = None, None
    if max_disp > 0:
        n_sample = config["num_sample_pts_for_bbox"]
        ref_ext, _ = calc_extended_lonlat_bbox(reference, n_sample, max_disp, None, datum, **csv_args)
        _, trans_src_ext = calc_extended_lonlat_bbox(source, n_sample, max_disp, init_T, datum, **csv_args)
        ref_box = lonlat_boxes_intersection(ref_ext, trans_src_ext)
        if ref_box is None:
            raise Error("The reference and source clouds do not overlap")
        src_box = transform_lonlat_box(ref_box, np.linalg.inv(init_T), datum)
        if verbose:
            flush_print("Overlap lon-lat box: {}".format(ref_box))

    # load and center
    args = [config["max_num_reference_points"], ref_box]
    ref_pts, shift = load_cloud(reference, *args, calc_shift=True, datum=datum, verbose=verbose, **csv_args)
    args = [config["max_num_source_points"], src_box]
    src_pts, _ = load_cloud(source, *args, shift=shift, datum=datum, verbose=verbose, **csv_args)

    # register
    ref_tree = cKDTree(ref_pts)
    beg_errors = compute_errors(src_pts, ref_tree)
    init_T_shifted = apply_shift(init_T, shift)
    T_shifted, n_iter, converged = icp(src_pts, ref_pts, config, init_T_shifted, verbose=verbose)
    end_errors = compute_errors(src_pts, ref_tree, T_shifted)

    # report
    T = apply_shift(T_shifted, -shift)
    trans_src_pts = transform_points(T_shifted, src_pts)
    n = len(src_pts)
    beg_mean, end_mean = calc_mean(beg_errors, n), calc_mean(end_errors, n)
    translation = calc_translation_vec(src_pts, trans_src_pts, shift, datum)
    results = {
        "transform": T,
        "inverse_transform": np.linalg.inv(T),
        "beg_mean": beg_mean,
        "beg_stddev": calc_stddev(beg_errors, beg_mean),
        "end_mean": end_mean,
        "end_stddev": calc_stddev(end_errors, end_mean),
        "max_displacement": calc_max_displacement(src_pts, trans_src_pts),
        "num_iterations": n_iter,
        "converged": converged,
        "shift": shift,
        "beg_smallest_means": calc_smallest_errors_means(beg_errors),
        "end_smallest_means": calc_smallest_errors_means(end_errors),
    }
    results.update(translation)
    if verbose:
        flush_print("Error before alignment (mean / stddev): {:.6f} / {:.6f}".format(beg_mean, results["beg_stddev"]))
        flush_print("Error after alignment  (mean / stddev): {:.6f} / {:.6f}".format(end_mean, results["end_stddev"]))
        for label, key in [("before", "beg_smallest_means"), ("after", "end_smallest_means")]:
            means = ", ".join("{}%: {:.6f}".format(p, m) for p, m in results[key].items())
            flush_print("Mean of smallest errors {} alignment: {}".format(label, means))
        flush_print("Translation vector (North-East-Down, meters): {}".format(translation["trans_ned"]))
        flush_print("Maximum displacement of source points: {:.6f}".format(results["max_displacement"]))

    # apply
    if out_dir is not None:
        os.makedirs(out_dir, exist_ok=True)
        np.savetxt(os.path.join(out_dir, "transform.txt"), T, fmt="%.17g")
        np.savetxt(os.path.join(out_dir, "inverse_transform.txt"), results["inverse_transform"], fmt="%.17g")
        save_errors(os.path.join(out_dir, "beg_errors.csv"), src_pts, beg_errors, shift, datum)
        save_errors(os.path.join(out_dir, "end_errors.csv"), trans_src_pts, end_errors, shift, datum)
        if config["save_transformed_source"]:
            ext = os.path.splitext(source)[1]
            out_file = os.path.join(out_dir, "trans_source" + ext)
            out_file = save_trans_point_cloud(source, out_file, T, datum, **csv_args)
            results["trans_source"] = out_file
        flush_print("Alignment outputs written at {}".format(out_dir))

    if verbose:
        flush_print("Point cloud alignment completed in {:.2f} seconds\n".format(timeit.default_timer() - t0))
    return results
