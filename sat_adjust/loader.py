"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script consists of a series of functions dedicated to load and store data on the disk:
configuration files, lists of paths, camera models, point clouds and images
"""

import json
import os
import warnings

import numpy as np
import rasterio
import rpcm

from sat_adjust import ba_rotate, cam_utils

warnings.filterwarnings("ignore", category=rasterio.errors.NotGeoreferencedWarning)


class Error(Exception):
    pass


def flush_print(input_string):
    print(input_string, flush=True)


def display_dict(d):
    """
    Displays the input dictionary d
    """
    max_k_len = len(sorted(d.keys(), key=lambda i: len(i))[::-1][0])
    for k in d.keys():
        print("    - {}:{}{}".format(k, "".join([" "] * (max_k_len - len(k) + 2)), d[k]))
    print("\n")


def get_time_in_hours_mins_secs(input_seconds):
    """
    Takes a float representing a time measure in seconds
    Returns a string with the time measure expressed in hours:minutes:seconds
    """
    hours, rem = divmod(input_seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    return "{:0>2}:{:0>2}:{:05.2f}".format(int(hours), int(minutes), seconds)


def get_id(fname):
    """
    Gets the basename without extension of a path to file
    """
    return os.path.splitext(os.path.basename(fname))[0]


def save_dict_to_json(input_dict, output_json_fname):
    """
    Saves a python dictionary to a .json file
    """
    with open(output_json_fname, "w") as f:
        json.dump(input_dict, f, indent=2)


def load_dict_from_json(input_json_fname):
    """
    Reads a .json file into a python dictionary
    """
    if not os.path.exists(input_json_fname):
        raise Error("File not found: {}".format(input_json_fname))
    with open(input_json_fname) as f:
        output_dict = json.load(f)
    return output_dict


def load_list_of_paths(path_to_txt):
    """
    Read a list of strings from a txt (one string per line), empty lines are skipped
    """
    if not os.path.exists(path_to_txt):
        raise Error("File not found: {}".format(path_to_txt))
    with open(path_to_txt, "r") as f:
        content = f.readlines()
    return [x.strip() for x in content if len(x.strip()) > 0]


def get_doubles_from_line(line):
    """
    Extracts the numbers from a line containing only numbers separated by spaces or commas
    """
    tmp = [x for x in line.replace(",", " ").replace("\n", " ").split(" ") if x != ""]
    return list(map(np.float64, tmp))


def write_pinhole_to_tsai_file(fname, cam):
    """
    Writes a pinhole camera to a .tsai file
    R is the camera to world rotation and C the camera center, both in ECEF
    """
    R = cam.cam2world
    k1, k2, p1, p2, k3 = cam.distortion
    os.makedirs(os.path.dirname(os.path.abspath(fname)), exist_ok=True)
    with open(fname, "w") as f_out:
        f_out.write("VERSION_4\n")
        f_out.write("PINHOLE\n")
        f_out.write("fu = {:.17g}\n".format(cam.fu))
        f_out.write("fv = {:.17g}\n".format(cam.fv))
        f_out.write("cu = {:.17g}\n".format(cam.cu))
        f_out.write("cv = {:.17g}\n".format(cam.cv))
        f_out.write("u_direction = 1 0 0\n")
        f_out.write("v_direction = 0 1 0\n")
        f_out.write("w_direction = 0 0 1\n")
        f_out.write("C = {}\n".format(" ".join(["{:.17g}".format(v) for v in cam.center])))
        f_out.write("R = {}\n".format(" ".join(["{:.17g}".format(v) for v in R.ravel()])))
        f_out.write("pitch = {:.17g}\n".format(cam.pitch))
        if np.any(cam.distortion):
            f_out.write("TSAI\n")
            for k, v in zip(["k1", "k2", "p1", "p2", "k3"], [k1, k2, p1, p2, k3]):
                f_out.write("{} = {:.17g}\n".format(k, v))
        else:
            f_out.write("NULL\n")


def read_pinhole_from_tsai_file(fname):
    """
    Reads a pinhole camera from a .tsai file
    """
    if not os.path.exists(fname):
        raise Error("File not found: {}".format(fname))
    values = {}
    with open(fname) as f:
        for line in f.readlines():
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            values[key.strip()] = get_doubles_from_line(value)
    try:
        center = np.array(values["C"])
        R = np.array(values["R"]).reshape((3, 3))
        fu, fv, cu, cv = values["fu"][0], values["fv"][0], values["cu"][0], values["cv"][0]
    except (KeyError, ValueError, IndexError) as e:
        raise Error("Malformed pinhole camera file {}: {}".format(fname, e))
    pitch = values.get("pitch", [1.0])[0]
    distortion = [values.get(k, [0.0])[0] for k in ["k1", "k2", "p1", "p2", "k3"]]
    return cam_utils.PinholeCamera(center, R, fu, fv, cu, cv, distortion=distortion, pitch=pitch)


def write_adjust_file(fname, translation, axis_angle, rotation_center):
    """
    Writes a camera adjustment to a .adjust file
    Line 1: translation, line 2: rotation quaternion (w x y z), line 3: inverse rotation quaternion,
    line 4: rotation matrix, line 5: rotation center
    """
    R = ba_rotate.axis_angle_to_R(axis_angle)
    q = ba_rotate.R_to_quaternion(R)
    q_inv = ba_rotate.R_to_quaternion(R.T)
    os.makedirs(os.path.dirname(os.path.abspath(fname)), exist_ok=True)
    with open(fname, "w") as f_out:
        for values in [translation, q, q_inv, R.ravel(), rotation_center]:
            f_out.write(" ".join(["{:.17g}".format(v) for v in values]) + "\n")


def read_adjust_file(fname):
    """
    Reads a camera adjustment from a .adjust file

    Returns:
        translation: 3-valued vector
        axis_angle: 3-valued axis-angle vector of the rotation
        rotation_center: 3-valued vector
    """
    if not os.path.exists(fname):
        raise Error("File not found: {}".format(fname))
    with open(fname) as f:
        lines = f.readlines()
    try:
        m_translation = np.array(get_doubles_from_line(lines[0]))
        m_rotation = get_doubles_from_line(lines[1])
        m_rotation_center = np.array(get_doubles_from_line(lines[4]))
    except (IndexError, ValueError) as e:
        raise Error("Malformed adjustment file {}: {}".format(fname, e))
    axis_angle = ba_rotate.axis_angle_from_R(ba_rotate.quaternion_to_R(*m_rotation))
    return m_translation, axis_angle, m_rotation_center


def load_camera(fname, datum=None):
    """
    Loads a camera model from a file, the format is given by the file extension:
    .tsai (pinhole), .json (any camera written by save_camera), .rpc or .txt (RPC), .tif (RPC in geotiff)
    """
    if not os.path.exists(fname):
        raise Error("Camera file not found: {}".format(fname))
    ext = os.path.splitext(fname)[1].lower()
    if ext == ".tsai":
        return read_pinhole_from_tsai_file(fname)
    elif ext == ".json":
        try:
            return cam_utils.camera_from_dict(load_dict_from_json(fname))
        except (KeyError, cam_utils.Error) as e:
            raise Error("Malformed camera file {}: {}".format(fname, e))
    elif ext in [".rpc", ".txt"]:
        return cam_utils.RpcCamera(rpcm.rpc_from_rpc_file(fname), datum=datum)
    elif ext in [".tif", ".tiff"]:
        return cam_utils.RpcCamera(rpcm.rpc_from_geotiff(fname), datum=datum)
    raise Error("Unknown camera file format: {}".format(fname))


def load_cameras(camera_paths, datum=None, verbose=True):
    cameras = [load_camera(fname, datum=datum) for fname in camera_paths]
    if verbose:
        flush_print("Loaded {} cameras".format(len(cameras)))
    return cameras


def save_camera(fname, cam):
    """
    Writes a camera model to a file, .tsai for pinhole cameras and .json for the rest
    Adjusted cameras are written as .adjust files next to the underlying camera
    """
    os.makedirs(os.path.dirname(os.path.abspath(fname)), exist_ok=True)
    if isinstance(cam, cam_utils.AdjustedCamera):
        write_adjust_file(fname, cam.translation, cam.axis_angle, cam.rotation_center)
    elif isinstance(cam, cam_utils.PinholeCamera) and fname.endswith(".tsai"):
        write_pinhole_to_tsai_file(fname, cam)
    elif isinstance(cam, cam_utils.RpcCamera):
        cam.rpc.write_to_file(fname)
    else:
        save_dict_to_json(cam.to_dict(), fname)


def read_csv(fname, min_cols=3, keep_all_cols=False):
    """
    Reads the numerical values of a csv file, lines starting with # are skipped
    Only the first min_cols columns are kept, unless keep_all_cols is True
    """
    if not os.path.exists(fname):
        raise Error("File not found: {}".format(fname))
    values = np.loadtxt(fname, delimiter=",", comments="#", ndmin=2)
    if values.shape[1] < min_cols:
        raise Error("Expected at least {} columns in {}".format(min_cols, fname))
    return values if keep_all_cols else values[:, :min_cols]


def write_csv(fname, values, header=None, fmt="%.17g"):
    """
    Writes a 2d array to a csv file, with an optional header line starting with #
    """
    os.makedirs(os.path.dirname(os.path.abspath(fname)), exist_ok=True)
    header = "" if header is None else header
    np.savetxt(fname, np.atleast_2d(values), delimiter=",", header=header, fmt=fmt)


def load_image(path_to_geotiff, offset=None):
    """
    Reads an input image, it is possible to specify a window to read a specific region of the image
    Multiband images are averaged to a single band
    """
    if offset is None:
        with rasterio.open(path_to_geotiff) as src:
            im = src.read().astype(float)
    else:
        y0, x0, h, w = offset["row0"], offset["col0"], offset["height"], offset["width"]
        with rasterio.open(path_to_geotiff) as src:
            im = src.read(window=((y0, y0 + h), (x0, x0 + w))).astype(float)
    if im.shape[0] == 1:
        return im[0]
    return np.mean(im, axis=0)


def write_image(fname, im, nodata=None):
    """
    Writes a single band image without georeference, NaN values are replaced by nodata if specified
    """
    im = np.asarray(im, dtype=np.float32)
    if nodata is not None:
        im = np.where(np.isnan(im), nodata, im).astype(np.float32)
    profile = {"driver": "GTiff", "dtype": np.float32, "height": im.shape[0], "width": im.shape[1], "count": 1}
    if nodata is not None:
        profile["nodata"] = nodata
    os.makedirs(os.path.dirname(os.path.abspath(fname)), exist_ok=True)
    with rasterio.open(fname, "w", **profile) as f:
        f.write(im, 1)


def read_point_cloud_raster(fname):
    """
    Reads a multiband point cloud raster, bands 1 to 3 are the ECEF coordinates of each pixel
    and the rest are auxiliary channels. All-zero coordinates mark invalid points

    Returns:
        cloud: HxWxB array
        profile: rasterio profile of the input file, used to write the transformed cloud
    """
    if not os.path.exists(fname):
        raise Error("File not found: {}".format(fname))
    with rasterio.open(fname) as f:
        cloud = f.read().astype(np.float64)
        profile = f.profile.copy()
    if cloud.shape[0] < 3:
        raise Error("A point cloud raster needs at least 3 bands: {}".format(fname))
    return np.moveaxis(cloud, 0, -1), profile


def write_point_cloud_raster(fname, cloud, profile=None):
    """
    Writes a HxWxB point cloud raster
    """
    profile = {} if profile is None else profile.copy()
    profile.update(
        {
            "driver": "GTiff",
            "dtype": "float64",
            "height": cloud.shape[0],
            "width": cloud.shape[1],
            "count": cloud.shape[2],
        }
    )
    os.makedirs(os.path.dirname(os.path.abspath(fname)), exist_ok=True)
    with rasterio.open(fname, "w", **profile) as f:
        f.write(np.moveaxis(cloud, -1, 0).astype(np.float64))


def read_disparity(fname):
    """
    Reads a 2-band disparity map (horizontal and vertical disparity), nodata values become NaN

    Returns:
        dx, dy: HxW arrays
    """
    if not os.path.exists(fname):
        raise Error("File not found: {}".format(fname))
    with rasterio.open(fname) as f:
        if f.count < 2:
            raise Error("A disparity map needs 2 bands: {}".format(fname))
        dx, dy = f.read(1).astype(np.float64), f.read(2).astype(np.float64)
        nodata = f.nodata
    if nodata is not None and not np.isnan(nodata):
        dx[dx == nodata] = np.nan
        dy[dy == nodata] = np.nan
    return dx, dy
