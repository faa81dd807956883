"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements the synthesis of satellite orbits and cameras
The orbit is a straight segment in the projected coordinates of a DEM, sampled at a given number of cameras.
Each camera looks down, with the along track direction as the camera y axis, optionally rotated by
roll, pitch and yaw angles and perturbed by a sinusoidal jitter. Synthetic images can be rendered by
intersecting the camera rays with the DEM and sampling an orthoimage
"""

import os
import timeit
from multiprocessing.pool import ThreadPool

import numpy as np
from scipy.optimize import least_squares

from sat_adjust import ba_rotate, cam_utils, dem_utils, geo_utils, loader
from sat_adjust.loader import flush_print


class Error(Exception):
    pass


def init_sat_sim_config(config=None):
    """
    Initializes the configuration of the orbit and camera synthesis

    Args:
        config: dict possibly containing values that we want to be different from default
                the default configuration is used for all parameters not specified in config

    Returns:
        output_config: dict where keys identify the parameters and values their assigned value
    """
    keys = [
        "first",
        "last",
        "first_dem_pixel",
        "last_dem_pixel",
        "first_ground_pos",
        "last_ground_pos",
        "num_cameras",
        "roll",
        "pitch",
        "yaw",
        "jitter_frequency",
        "velocity",
        "horizontal_uncertainty",
        "focal_length",
        "optical_center",
        "image_size",
        "dem_height_error_tol",
        "big_value",
        "out_prefix",
        "save_ref_cams",
        "camera_list",
        "first_index",
        "last_index",
        "no_images",
        "tile_size",
        "num_threads",
    ]
    default_values = [
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        None,
        1e-3,
        1e100,
        None,
        False,
        None,
        -1,
        -1,
        False,
        256,
        4,
    ]
    output_config = {}
    if config is not None:
        for v, k in zip(default_values, keys):
            output_config[k] = config[k] if k in config.keys() else v
    else:
        output_config = dict(zip(keys, default_values))
    return output_config


class Trajectory:
    def __init__(self, positions, cam2world, ref_cam2world, first_proj, last_proj):
        """
        Camera positions along an orbit and their orientations

        Args:
            positions: Nx3 array with the ECEF camera centers
            cam2world: Nx3x3 array with the camera to world rotations
            ref_cam2world: Nx3x3 array with the rotations before roll, pitch, yaw and jitter
            first_proj, last_proj: the orbit endpoints in projected coordinates
        """
        self.positions = np.asarray(positions)
        self.cam2world = np.asarray(cam2world)
        self.ref_cam2world = np.asarray(ref_cam2world)
        self.first_proj = first_proj
        self.last_proj = last_proj

    def __len__(self):
        return self.positions.shape[0]


def proj_to_ecef(dem, proj):
    """
    Convert from the projected coordinates of the DEM (x, y, height above datum) to ECEF
    """
    return geo_utils.proj_to_ecef(dem.proj, dem.datum, proj)


def normalize(v):
    n = np.linalg.norm(v)
    if not n > 0:
        raise Error("Cannot normalize a vector of zero or invalid norm")
    return v / n


def calc_traj_pt_along_across(first_proj, last_proj, dem, t, delta, proj_along, proj_across):
    """
    Point on the trajectory and along and across track unit vectors in ECEF
    The directions are computed by centered differences of points moved by delta in projected coordinates,
    since the transform from projected coordinates to ECEF is nonlinear

    Args:
        first_proj, last_proj: orbit endpoints in projected coordinates
        dem: GeoRaster whose georeference defines the projected coordinates
        t: position along the segment, 0 at first_proj and 1 at last_proj
        delta: small displacement in projected units
        proj_along, proj_across: unit along and across track directions in projected coordinates

    Returns:
        P: 3-valued vector, ECEF point on the trajectory
        along: unit along track vector in ECEF
        across: unit across track vector in ECEF, perpendicular to along
    """
    P = first_proj * (1.0 - t) + last_proj * t
    pts = np.vstack([P, P - delta * proj_along, P + delta * proj_along, P - delta * proj_across,
                     P + delta * proj_across])
    P, L1, L2, C1, C2 = proj_to_ecef(dem, pts)
    along = normalize(L2 - L1)
    across = normalize(C2 - C1)
    across = normalize(across - np.dot(along, across) * along)
    return P, along, across


def assemble_cam2world_matrix(along, across, down):
    """
    Camera to world rotation with the along track, across track and down vectors as columns
    """
    return np.vstack([along, across, down]).T


def orbit_cam2world(along, across, roll=0.0, pitch=0.0, yaw=0.0):
    """
    Camera to world rotations before and after the roll, pitch, yaw (degrees) rotation
    The down vector is perpendicular to along and across, and along track becomes the camera y axis.
    rotation_xy is part of both rotations, so they differ only by the roll, pitch and yaw
    """
    down = normalize(np.cross(along, across))
    A = assemble_cam2world_matrix(along, across, down)
    ref = A @ ba_rotate.rotation_xy()
    cam2world = A @ ba_rotate.roll_pitch_yaw(roll, pitch, yaw) @ ba_rotate.rotation_xy()
    return cam2world, ref


def dem_pixel_diff(dem, first_proj, last_proj, proj_along, proj_across, t, delta, roll, pitch, yaw, pixel_loc,
                   height_error_tol=1e-3):
    """
    Difference between a DEM pixel and the DEM pixel seen at the image center of the camera at position t

    Returns:
        diff: 2-valued vector, None if the camera ray does not intersect the DEM
    """
    try:
        P, along, across = calc_traj_pt_along_across(first_proj, last_proj, dem, t, delta, proj_along, proj_across)
    except Error:
        return None
    if not np.all(np.isfinite(P)):
        return None
    cam2world, _ = orbit_cam2world(along, across, roll, pitch, yaw)
    cam_dir = cam2world @ np.array([0.0, 0.0, 1.0])
    xyz, success = dem_utils.intersect_ray_with_dem(dem, P, cam_dir, height_error_tol)
    if not success:
        return None
    llh = dem.datum.cartesian_to_geodetic(xyz)
    col, row = dem.lonlat_to_pixel(llh[0], llh[1])
    if not dem.contains(col, row):
        return None
    return np.asarray(pixel_loc, dtype=np.float64) - np.array([col, row], dtype=np.float64)


def dem_pixel_err(dem, first_proj, last_proj, proj_along, proj_across, t, delta, roll, pitch, yaw, pixel_loc,
                  height_error_tol=1e-3, big_value=1e100):
    """
    Distance between a DEM pixel and the DEM pixel seen at the image center of the camera at position t
    along the orbit, big_value if the camera ray does not intersect the DEM
    """
    args = [dem, first_proj, last_proj, proj_along, proj_across, t, delta, roll, pitch, yaw, pixel_loc]
    diff = dem_pixel_diff(*args, height_error_tol=height_error_tol)
    if diff is None:
        return big_value
    return float(np.linalg.norm(diff))


def calc_max_search_steps(dem, first_ecef, step):
    """
    Number of steps of the given length (meters) covering the distance from first_ecef to the DEM center
    plus the DEM diagonal. Cameras farther along the orbit only see the DEM with very oblique views
    """
    lons, lats = dem.pixel_to_lonlat(np.array([0.0, dem.width, 0.5 * dem.width]),
                                     np.array([0.0, dem.height, 0.5 * dem.height]))
    corner1, corner2, center = dem.datum.geodetic_to_cartesian(np.vstack([lons, lats, np.zeros(3)]).T)
    reach = np.linalg.norm(first_ecef - center) + np.linalg.norm(corner2 - corner1)
    return int(np.ceil(reach / step)) + 1


def find_best_proj_cam_location(dem, first_proj, last_proj, proj_along, proj_across, delta, roll, pitch, yaw,
                                pixel_loc, height_error_tol=1e-3, big_value=1e100, max_attempts=None):
    """
    Find the camera position on the orbit whose image center ray meets the DEM closest to a given DEM pixel

    A coarse search moves away from the first endpoint in both directions with steps of 100 m of orbit,
    until the error stops decreasing. The best position found is refined with Levenberg-Marquardt,
    using the distance along the orbit in meters as variable

    Args:
        dem: GeoRaster
        first_proj, last_proj: orbit endpoints in projected coordinates
        proj_along, proj_across: unit along and across track directions in projected coordinates
        delta: small displacement in projected units, to compute directions
        roll, pitch, yaw: camera attitude in degrees
        pixel_loc: (col, row) of the target DEM pixel
        max_attempts (optional): number of coarse search steps on each side of the first endpoint,
                                 by default enough to go past the DEM, see calc_max_search_steps

    Returns:
        best_proj: 3-valued vector, the camera position in projected coordinates
    """
    P1, P2 = proj_to_ecef(dem, np.vstack([first_proj, last_proj]))
    d = np.linalg.norm(P2 - P1)
    if d < 1.0:
        raise Error("Ensure that the input orbit end points are at least 1 m apart")

    # length of the orbit per unit of t, at the first endpoint
    dt = 1e-3
    pts = np.vstack([first_proj * (1 + dt) - last_proj * dt, first_proj * (1 - dt) + last_proj * dt])
    Q1, Q2 = proj_to_ecef(dem, pts)
    slope = np.linalg.norm(Q2 - Q1) / (2 * dt)
    spacing = 100.0 / slope

    args = [dem, first_proj, last_proj, proj_along, proj_across]
    rest = [delta, roll, pitch, yaw, pixel_loc]

    if max_attempts is None:
        max_attempts = calc_max_search_steps(dem, P1, 100.0)

    # search a usable initial guess
    best_t, best_val = 0.0, big_value
    for i in range(int(max_attempts)):
        curr_best_val = best_val
        for j in [-1, 1]:
            t = spacing * i * j
            val = dem_pixel_err(*args, t, *rest, height_error_tol=height_error_tol, big_value=big_value)
            if val < best_val:
                best_t, best_val = t, val
        if curr_best_val == best_val and curr_best_val < big_value:
            break
    if not best_val < big_value:
        raise Error("No camera position on the orbit sees the ground pixel {}".format(pixel_loc))

    def fun(s):
        diff = dem_pixel_diff(*args, s[0] / slope, *rest, height_error_tol=height_error_tol)
        return np.full(2, big_value) if diff is None else diff

    def jac(s):
        return ((fun(s + 1.0) - fun(s - 1.0)) / 2.0)[:, np.newaxis]

    res = least_squares(fun, [best_t * slope], jac=jac, method="lm", xtol=1e-14, ftol=1e-14, gtol=1e-14,
                        max_nfev=100)
    # the solver status is ignored, its solution is kept when it improves the initial guess
    t = res.x[0] / slope if np.linalg.norm(res.fun) <= best_val else best_t
    return first_proj * (1.0 - t) + last_proj * t


def calc_orbit_length(first_proj, last_proj, dem, num=100000):
    """
    Length in ECEF of the orbit between two points in projected coordinates
    """
    ts = np.linspace(0.0, 1.0, num)[:, np.newaxis]
    pts = proj_to_ecef(dem, first_proj + ts * (last_proj - first_proj))
    return float(np.sum(np.linalg.norm(np.diff(pts, axis=0), axis=1)))


def endpoint_to_proj(dem, config, name):
    """
    Orbit endpoint in projected coordinates, given either as projected (x, y, height)
    or as DEM (col, row, height) with the "_dem_pixel" key
    """
    if config[name] is not None:
        return np.array(config[name], dtype=np.float64)
    pix = config[name + "_dem_pixel"]
    if pix is None:
        raise Error("Missing orbit endpoint: {}".format(name))
    x, y = dem.pixel_to_point(pix[0], pix[1])
    return np.array([x, y, pix[2]], dtype=np.float64)


def calc_trajectory(config, dem, verbose=True):
    """
    Compute the satellite trajectory and the camera to world rotations
    The trajectory is a straight segment in projected coordinates, sampled uniformly

    Every camera goes through orbit_cam2world, with roll, pitch and yaw equal to 0 when they are not set.
    Jitter is then added to these angles whenever jitter_frequency is set, even without roll, pitch and yaw.
    The reference rotations are the camera rotations without roll, pitch, yaw and jitter

    Args:
        config: dict with the synthesis configuration, see init_sat_sim_config
        dem: GeoRaster whose georeference defines the projected coordinates

    Returns:
        trajectory: Trajectory object
    """
    config = init_sat_sim_config(config)
    first_proj = endpoint_to_proj(dem, config, "first")
    last_proj = endpoint_to_proj(dem, config, "last")
    n_cam = config["num_cameras"]
    if n_cam is None or n_cam < 2:
        raise Error("The number of cameras must be at least 2")

    proj_along = last_proj - first_proj
    if np.all(proj_along == 0):
        raise Error("The first and last camera positions are the same")
    proj_along = proj_along / np.linalg.norm(proj_along)
    if max(abs(proj_along[0]), abs(proj_along[1])) < 1e-6:
        raise Error("The orbital segment is vertical or too short. Correct the orbit end points")
    proj_across = normalize(np.cross(proj_along, np.array([0.0, 0.0, 1.0])))

    # do not use a smaller value, ECEF coordinates are large numbers
    delta = 0.01

    have_ground_pos = config["first_ground_pos"] is not None and config["last_ground_pos"] is not None
    have_roll_pitch_yaw = all(config[k] is not None for k in ["roll", "pitch", "yaw"])
    roll, pitch, yaw = [config[k] if config[k] is not None else 0.0 for k in ["roll", "pitch", "yaw"]]
    tol = config["dem_height_error_tol"]
    orig_first_proj = first_proj.copy()

    if have_ground_pos and have_roll_pitch_yaw:
        if verbose:
            flush_print("Estimating orbit endpoints")
        args = [dem, first_proj, last_proj, proj_along, proj_across, delta, roll, pitch, yaw]
        new_first = find_best_proj_cam_location(*args, config["first_ground_pos"], tol, config["big_value"])
        new_last = find_best_proj_cam_location(*args, config["last_ground_pos"], tol, config["big_value"])
        first_proj, last_proj = new_first, new_last

    P1, P2 = proj_to_ecef(dem, np.vstack([first_proj, last_proj]))
    if np.linalg.norm(P2 - P1) < 1.0:
        raise Error("Ensure that the input orbit end points are at least 1 m apart")

    model_jitter = config["jitter_frequency"] is not None
    if model_jitter:
        if config["velocity"] is None or config["horizontal_uncertainty"] is None:
            raise Error("Modeling jitter requires the velocity and the horizontal uncertainty")
        if len(config["horizontal_uncertainty"]) != 3:
            raise Error("The horizontal uncertainty must have 3 values (roll, pitch, yaw)")

    positions, cam2world, ref_cam2world = [], [], []
    for i in range(n_cam):
        t = i / (n_cam - 1)
        P, along, across = calc_traj_pt_along_across(first_proj, last_proj, dem, t, delta, proj_along, proj_across)

        if have_ground_pos and not have_roll_pitch_yaw:
            # the camera looks at the ground path, so its orientation changes along the trajectory
            ground_pix = np.array(config["first_ground_pos"]) * (1.0 - t) + np.array(config["last_ground_pos"]) * t
            h = dem.interpolate(ground_pix[0], ground_pix[1])[0]
            if not np.isfinite(h):
                raise Error("Could not interpolate into the DEM along the ground path")
            gx, gy = dem.pixel_to_point(ground_pix[0], ground_pix[1])
            G = proj_to_ecef(dem, np.array([gx, gy, h]))
            ground_dir = G - P
            if np.linalg.norm(ground_dir) < 1e-6:
                raise Error("The ground position is too close to the camera")
            ground_dir = normalize(ground_dir)
            along = along - np.dot(ground_dir, along) * ground_dir
            across = -np.cross(along, ground_dir)

        along = normalize(along)
        across = normalize(across)
        across = normalize(across - np.dot(along, across) * along)

        amp = np.zeros(3)
        if model_jitter:
            curr_proj = first_proj * (1.0 - t) + last_proj * t
            dist = calc_orbit_length(orig_first_proj, curr_proj, dem)
            period = config["velocity"] / config["jitter_frequency"]
            for c in range(3):
                a = np.degrees(np.arctan(config["horizontal_uncertainty"][c] / curr_proj[2]))
                amp[c] = a * np.sin(dist * 2.0 * np.pi / period)

        R, ref = orbit_cam2world(along, across, roll + amp[0], pitch + amp[1], yaw + amp[2])
        positions.append(P)
        cam2world.append(R)
        ref_cam2world.append(ref)

    return Trajectory(np.array(positions), np.array(cam2world), np.array(ref_cam2world), first_proj, last_proj)


def gen_prefix(out_prefix, i):
    return "{}-{}".format(out_prefix, 10000 + i)


def gen_ref_prefix(out_prefix, i):
    return "{}-ref-{}".format(out_prefix, 10000 + i)


def skip_camera(i, first_index=-1, last_index=-1):
    """
    True if camera i is outside the range [first_index, last_index), when such a range is set
    """
    return first_index >= 0 and last_index >= 0 and (i < first_index or i >= last_index)


def optical_center(config):
    if config["optical_center"] is not None:
        return config["optical_center"]
    if config["image_size"] is None:
        raise Error("Either the optical center or the image size must be specified")
    return [config["image_size"][0] / 2.0, config["image_size"][1] / 2.0]


def gen_cameras(trajectory, config, verbose=True):
    """
    Create the pinhole cameras of a trajectory, with no distortion and pixel pitch 1
    The cameras are written as .tsai files if an output prefix is set, except those out of the index range

    Args:
        trajectory: Trajectory object
        config: dict with the synthesis configuration, see init_sat_sim_config

    Returns:
        cam_names: list of camera file names
        cams: list of cam_utils.PinholeCamera objects
    """
    config = init_sat_sim_config(config)
    if len(trajectory.positions) != len(trajectory.cam2world):
        raise Error("Expecting as many camera positions as camera orientations")
    if config["focal_length"] is None:
        raise Error("The focal length must be specified")
    f = config["focal_length"]
    cu, cv = optical_center(config)
    out_prefix = config["out_prefix"]

    cam_names, cams = [], []
    for i, (P, R) in enumerate(zip(trajectory.positions, trajectory.cam2world)):
        cam = cam_utils.PinholeCamera(P, R, f, f, cu, cv)
        cams.append(cam)
        cam_name = None if out_prefix is None else gen_prefix(out_prefix, i) + ".tsai"
        cam_names.append(cam_name)
        if out_prefix is None or skip_camera(i, config["first_index"], config["last_index"]):
            continue
        os.makedirs(os.path.dirname(os.path.abspath(cam_name)), exist_ok=True)
        if verbose:
            flush_print("Writing: {}".format(cam_name))
        loader.write_pinhole_to_tsai_file(cam_name, cam)
        if config["save_ref_cams"]:
            ref_cam = cam_utils.PinholeCamera(P, trajectory.ref_cam2world[i], f, f, cu, cv)
            ref_cam_name = gen_ref_prefix(out_prefix, i) + ".tsai"
            if verbose:
                flush_print("Writing: {}".format(ref_cam_name))
            loader.write_pinhole_to_tsai_file(ref_cam_name, ref_cam)
    return cam_names, cams


def read_cameras(camera_list, verbose=True):
    """
    Read the cameras listed in a text file, one path per line
    """
    if verbose:
        flush_print("Reading: {}".format(camera_list))
    cam_names = loader.load_list_of_paths(camera_list)
    if len(cam_names) == 0:
        raise Error("No cameras were found in {}".format(camera_list))
    cams = [loader.load_camera(fname) for fname in cam_names]
    return cam_names, cams


def camera_footprint_pixels(cam, image_size, raster, dem, height_error_tol=1e-3, n_samples=10):
    """
    Pixel box of a raster seen by a camera, from the DEM intersections of rays along the image border
    Returns None if no ray intersects the DEM
    """
    w, h = image_size
    s = np.linspace(0, 1, n_samples)
    border = np.vstack(
        [
            np.vstack([s * (w - 1), np.zeros_like(s)]).T,
            np.vstack([s * (w - 1), np.full_like(s, h - 1)]).T,
            np.vstack([np.zeros_like(s), s * (h - 1)]).T,
            np.vstack([np.full_like(s, w - 1), s * (h - 1)]).T,
        ]
    )
    dirs = cam.pixel_to_vector(border)
    ctrs = np.broadcast_to(np.atleast_2d(cam.camera_center(border)), dirs.shape)
    xyz, success = dem_utils.intersect_rays_with_dem(dem, ctrs, dirs, height_error_tol)
    if not np.any(success):
        return None
    llh = dem.datum.cartesian_to_geodetic(xyz[success])
    cols, rows = raster.lonlat_to_pixel(llh[:, 0], llh[:, 1])
    return cols.min(), rows.min(), cols.max(), rows.max()


def crop_to_footprint(cam, image_size, raster, dem, height_error_tol=1e-3, margin=50):
    """
    Crop a raster to the region seen by the camera, expanded by a margin in pixels
    """
    bbox = camera_footprint_pixels(cam, image_size, raster, dem, height_error_tol)
    if bbox is None:
        return raster
    col0, row0 = int(np.floor(bbox[0])) - margin, int(np.floor(bbox[1])) - margin
    col1, row1 = int(np.ceil(bbox[2])) + margin, int(np.ceil(bbox[3])) + margin
    col0, row0 = max(col0, 0), max(row0, 0)
    col1, row1 = min(col1, raster.width), min(row1, raster.height)
    if col1 <= col0 or row1 <= row0:
        return raster
    return raster.crop(col0, row0, col1 - col0, row1 - row0)


def render_tile(cam, dem, ortho, col0, row0, width, height, height_error_tol=1e-3):
    """
    Render a tile of a synthetic image by intersecting the camera rays with the DEM
    and sampling the orthoimage with bicubic interpolation

    Returns:
        tile: height x width array, NaN where the ray misses the DEM or the orthoimage
    """
    rows, cols = np.mgrid[row0 : row0 + height, col0 : col0 + width]
    pix = np.vstack([cols.ravel(), rows.ravel()]).T.astype(np.float64)
    dirs = cam.pixel_to_vector(pix)
    ctrs = np.broadcast_to(np.atleast_2d(cam.camera_center(pix)), dirs.shape)
    xyz, success = dem_utils.intersect_rays_with_dem(dem, ctrs, dirs, height_error_tol)
    tile = np.full(pix.shape[0], np.nan)
    if np.any(success):
        llh = dem.datum.cartesian_to_geodetic(xyz[success])
        tile[success] = ortho.height_at_lonlat(llh[:, 0], llh[:, 1], method="bicubic")
    return tile.reshape(height, width)


def gen_image(cam, image_size, dem, ortho, height_error_tol=1e-3, tile_size=256, num_threads=4):
    """
    Render a synthetic image seen by a camera, tiles are rendered in parallel threads

    Args:
        cam: camera with pixel_to_vector and camera_center
        image_size: (width, height) of the image
        dem: GeoRaster with the terrain heights
        ortho: GeoRaster with the orthoimage

    Returns:
        im: height x width array, NaN where nothing is seen
    """
    dem = crop_to_footprint(cam, image_size, dem, dem, height_error_tol)
    ortho = crop_to_footprint(cam, image_size, ortho, dem, height_error_tol)
    w, h = int(image_size[0]), int(image_size[1])
    args = []
    for row0 in range(0, h, tile_size):
        for col0 in range(0, w, tile_size):
            tw, th = min(tile_size, w - col0), min(tile_size, h - row0)
            args.append((cam, dem, ortho, col0, row0, tw, th, height_error_tol))
    with ThreadPool(max(min(num_threads, len(args)), 1)) as p:
        tiles = p.starmap(render_tile, args)
    im = np.full((h, w), np.nan)
    for (_, _, _, col0, row0, tw, th, _), tile in zip(args, tiles):
        im[row0 : row0 + th, col0 : col0 + tw] = tile
    return im


def gen_images(config, cam_names, cams, dem, ortho, external_cameras=False, verbose=True):
    """
    Render and write the synthetic image of each camera, the images have no georeference
    The nodata value is borrowed from the orthoimage

    Returns:
        image_names: list with the path of each image (None for skipped cameras)
    """
    config = init_sat_sim_config(config)
    if config["image_size"] is None:
        raise Error("The image size must be specified to generate images")
    out_prefix = config["out_prefix"]
    if out_prefix is None:
        raise Error("An output prefix is needed to write images")
    nodata = ortho.nodata if ortho.nodata is not None and not np.isnan(ortho.nodata) else -32768.0
    if verbose:
        flush_print("Generating images")
    image_names = []
    for i, cam in enumerate(cams):
        if external_cameras:
            stem = os.path.splitext(os.path.basename(cam_names[i]))[0]
            image_name = "{}-{}.tif".format(out_prefix, stem)
        else:
            image_name = gen_prefix(out_prefix, i) + ".tif"
        if skip_camera(i, config["first_index"], config["last_index"]):
            image_names.append(None)
            continue
        t0 = timeit.default_timer()
        im = gen_image(cam, config["image_size"], dem, ortho, config["dem_height_error_tol"],
                       config["tile_size"], config["num_threads"])
        loader.write_image(image_name, im, nodata=nodata)
        image_names.append(image_name)
        if verbose:
            flush_print("Writing: {} ({:.2f} seconds)".format(image_name, timeit.default_timer() - t0))
    return image_names


def synthesize(config, dem_file, ortho_file=None, verbose=True):
    """
    Synthesize an orbit with its cameras, and optionally the images seen by the cameras

    Args:
        config: dict with the synthesis configuration, see init_sat_sim_config
        dem_file: path to the DEM, its georeference defines the projected coordinates of the orbit endpoints
        ortho_file (optional): path to the orthoimage, needed to generate images

    Returns:
        results: dict with the trajectory (None if the cameras were read from a list),
                 the cameras, their file names and the image names
    """
    t0 = timeit.default_timer()
    config = init_sat_sim_config(config)
    if verbose:
        flush_print("\nOrbit synthesis configuration:")
        loader.display_dict(config)
    dem = dem_utils.load_interpolation_ready_dem(dem_file)

    trajectory = None
    external_cameras = config["camera_list"] is not None
    if external_cameras:
        cam_names, cams = read_cameras(config["camera_list"], verbose=verbose)
    else:
        trajectory = calc_trajectory(config, dem, verbose=verbose)
        cam_names, cams = gen_cameras(trajectory, config, verbose=verbose)

    image_names = []
    if ortho_file is not None and not config["no_images"]:
        ortho = dem_utils.GeoRaster.from_file(ortho_file)
        image_names = gen_images(config, cam_names, cams, dem, ortho, external_cameras, verbose=verbose)

    if verbose:
        flush_print("Orbit synthesis completed in {:.2f} seconds\n".format(timeit.default_timer() - t0))
    return {"trajectory": trajectory, "cameras": cams, "camera_names": cam_names, "image_names": image_names}
