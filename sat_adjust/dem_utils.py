"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements the GeoRaster class, used for DEMs and ortho images,
and the intersection of camera rays with a DEM
"""

import numpy as np
import rasterio
from rasterio.transform import Affine
from scipy import ndimage

from sat_adjust import geo_utils


class Error(Exception):
    pass


class GeoRaster:
    def __init__(self, data, transform, crs, nodata=None, datum=None):
        """
        A single band georeferenced raster held in memory
        Pixel (col, row) = (0, 0) is the center of the upper-left pixel

        Args:
            data: 2d array, the raster values
            transform: affine.Affine mapping (col, row) of the pixel corner to projected (x, y)
            crs: anything accepted by pyproj.CRS, the coordinate system of the projected (x, y)
            nodata (optional): value marking invalid pixels; NaN values are always invalid
            datum (optional): geo_utils.Datum, taken from crs if not specified
        """
        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 2:
            raise Error("GeoRaster expects a 2d array, got shape {}".format(data.shape))
        self.nodata = nodata
        self.data = data.copy()
        if nodata is not None and not np.isnan(nodata):
            self.data[data == nodata] = np.nan
        self.transform = transform
        self.crs = crs
        self.proj = geo_utils.ProjectionTransform(crs)
        self.datum = geo_utils.Datum.from_crs(crs) if datum is None else datum

    @classmethod
    def from_file(cls, path, band=1, datum=None):
        """
        Read a band of a georeferenced raster with its nodata value
        Raises Error if the file has no georeference
        """
        try:
            with rasterio.open(path) as f:
                data = f.read(band).astype(np.float64)
                crs, transform, nodata = f.crs, f.transform, f.nodata
        except rasterio.errors.RasterioIOError as e:
            raise Error("Could not read {}: {}".format(path, e))
        if crs is None:
            raise Error("Missing georeference in: {}".format(path))
        if nodata is None:
            print("WARNING: Could not read the nodata value for {}. Using NaN".format(path))
        return cls(data, transform, crs.to_wkt(), nodata=nodata, datum=datum)

    def write(self, path, nodata=-32768.0):
        """
        Write the raster to a GeoTIFF, invalid pixels are set to nodata
        """
        out = np.where(np.isnan(self.data), nodata, self.data).astype(np.float32)
        profile = {
            "driver": "GTiff",
            "dtype": np.float32,
            "height": out.shape[0],
            "width": out.shape[1],
            "count": 1,
            "crs": rasterio.crs.CRS.from_user_input(self.crs),
            "transform": self.transform,
            "nodata": nodata,
        }
        with rasterio.open(path, "w", **profile) as f:
            f.write(out, 1)

    @property
    def height(self):
        return self.data.shape[0]

    @property
    def width(self):
        return self.data.shape[1]

    def pixel_to_point(self, cols, rows):
        """
        convert pixel coordinates to projected coordinates
        """
        cols, rows = np.asarray(cols, dtype=np.float64), np.asarray(rows, dtype=np.float64)
        xs, ys = self.transform * (cols + 0.5, rows + 0.5)
        return xs, ys

    def point_to_pixel(self, xs, ys):
        """
        convert projected coordinates to pixel coordinates
        """
        xs, ys = np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64)
        cols, rows = ~self.transform * (xs, ys)
        return cols - 0.5, rows - 0.5

    def lonlat_to_pixel(self, lons, lats):
        xs, ys = self.proj.lonlat_to_point(lons, lats)
        return self.point_to_pixel(xs, ys)

    def pixel_to_lonlat(self, cols, rows):
        xs, ys = self.pixel_to_point(cols, rows)
        return self.proj.point_to_lonlat(xs, ys)

    def contains(self, cols, rows):
        """
        True for the pixel positions inside the raster extent
        """
        cols, rows = np.asarray(cols), np.asarray(rows)
        return (cols >= 0) & (rows >= 0) & (cols <= self.width - 1) & (rows <= self.height - 1)

    def interpolate(self, cols, rows, method="bilinear"):
        """
        Interpolate the raster at (col, row) positions
        The result is NaN outside the raster extent or close to invalid pixels

        Args:
            cols, rows: arrays of pixel coordinates
            method (optional): "bilinear", "bicubic" or "nearest"

        Returns:
            values: array of interpolated values
        """
        cols = np.atleast_1d(np.asarray(cols, dtype=np.float64))
        rows = np.atleast_1d(np.asarray(rows, dtype=np.float64))
        inside = self.contains(cols, rows) & np.isfinite(cols) & np.isfinite(rows)
        out = np.full(cols.shape, np.nan)
        if not np.any(inside):
            return out
        coords = np.vstack([rows[inside], cols[inside]])
        invalid = np.isnan(self.data)
        filled = np.where(invalid, 0.0, self.data)
        if method == "nearest":
            order = 0
        elif method == "bilinear":
            order = 1
        elif method == "bicubic":
            order = 3
            invalid = ndimage.binary_dilation(invalid, structure=np.ones((3, 3), dtype=bool))
        else:
            raise Error("Unknown interpolation method: {}".format(method))
        vals = ndimage.map_coordinates(filled, coords, order=order, mode="nearest")
        bad = ndimage.map_coordinates(invalid.astype(np.float64), coords, order=min(order, 1), mode="nearest")
        vals[bad > 0] = np.nan
        out[inside] = vals
        return out

    def height_at_lonlat(self, lons, lats, method="bilinear"):
        """
        Interpolate the raster at lon-lat positions, NaN outside the valid area
        """
        cols, rows = self.lonlat_to_pixel(lons, lats)
        return self.interpolate(cols, rows, method=method)

    def crop(self, col0, row0, width, height):
        """
        Crop the raster, the georeference is updated accordingly
        """
        col0, row0 = max(int(col0), 0), max(int(row0), 0)
        col1, row1 = min(col0 + int(width), self.width), min(row0 + int(height), self.height)
        if col1 <= col0 or row1 <= row0:
            raise Error("Empty crop of raster")
        transform = self.transform * Affine.translation(col0, row0)
        return GeoRaster(self.data[row0:row1, col0:col1], transform, self.crs, datum=self.datum)

    def height_range(self):
        valid = self.data[~np.isnan(self.data)]
        if valid.size == 0:
            raise Error("The raster has no valid pixels")
        return valid.min(), valid.max()


def load_interpolation_ready_dem(dem_path, datum=None):
    """
    Read a DEM from disk, ready to be interpolated
    """
    return GeoRaster.from_file(dem_path, datum=datum)


def interp_dem_height(dem, lonlat, method="bilinear"):
    """
    Interpolate the DEM height at a lon-lat position

    Returns:
        success: False if the position falls outside the valid DEM area
        height: the interpolated height (NaN if success is False)
    """
    h = dem.height_at_lonlat(lonlat[0], lonlat[1], method=method)[0]
    return bool(np.isfinite(h)), h


def ray_ellipsoid_intersection(centers, directions, a, b):
    """
    Closest forward intersection of the rays centers + t * directions with the ellipsoid of semi-axes (a, a, b)

    Args:
        centers, directions: Nx3 arrays
        a, b: semi-major and semi-minor axes

    Returns:
        t: N-valued array, NaN where the ray misses the ellipsoid, 0 where the ray starts inside it
    """
    scale = np.array([1.0 / a, 1.0 / a, 1.0 / b])
    c, d = centers * scale, directions * scale
    A = np.sum(d * d, axis=1)
    B = 2.0 * np.sum(c * d, axis=1)
    C = np.sum(c * c, axis=1) - 1.0
    disc = B * B - 4 * A * C
    t = np.full(A.shape, np.nan)
    hit = (disc >= 0) & (A > 0)
    sq = np.sqrt(np.where(hit, disc, 0.0))
    t1 = (-B - sq) / (2 * np.where(A > 0, A, 1.0))
    t[hit & (t1 >= 0)] = t1[hit & (t1 >= 0)]
    t[C <= 0] = 0.0
    return t


def intersect_rays_with_dem(dem, centers, directions, height_error_tol=1e-3, num_samples=20, margin=10.0):
    """
    Intersect a set of rays with a DEM

    Each ray is bracketed between the ellipsoids inflated by the DEM maximum and minimum heights.
    The bracket is sampled to find the first crossing of the terrain, which is then refined by bisection
    until the position along the ray is known within height_error_tol

    Args:
        dem: GeoRaster with heights above the datum
        centers: Nx3 array with the ECEF origin of each ray
        directions: Nx3 array with the ECEF direction of each ray
        height_error_tol (optional): tolerance on the intersection, in meters
        num_samples (optional): samples used to bracket the crossing
        margin (optional): meters added above and below the DEM height range

    Returns:
        xyz: Nx3 array with the ECEF intersections (zeros where not found)
        success: N-valued boolean array, False where the ray misses the DEM or hits invalid pixels
    """
    centers = np.atleast_2d(np.asarray(centers, dtype=np.float64))
    directions = np.atleast_2d(np.asarray(directions, dtype=np.float64))
    n_rays = centers.shape[0]
    norms = np.linalg.norm(directions, axis=1)
    success = norms > 0
    directions = directions / np.where(success, norms, 1.0)[:, np.newaxis]

    hmin, hmax = dem.height_range()
    a, b = dem.datum.a, dem.datum.b
    t_top = ray_ellipsoid_intersection(centers, directions, a + hmax + margin, b + hmax + margin)
    t_bot = ray_ellipsoid_intersection(centers, directions, a + hmin - margin, b + hmin - margin)
    # a ray starting below the lowest terrain cannot see it
    success &= np.isfinite(t_top) & np.isfinite(t_bot) & (t_bot > 0)
    t_top, t_bot = np.where(success, t_top, 0.0), np.where(success, t_bot, 0.0)

    def height_diff(ctrs, dirs, ts):
        xyz = ctrs + ts[:, np.newaxis] * dirs
        llh = dem.datum.cartesian_to_geodetic(xyz)
        return llh[:, 2] - dem.height_at_lonlat(llh[:, 0], llh[:, 1])

    # sample the bracket, all rays at once
    steps = np.linspace(0.0, 1.0, num_samples)
    ts = t_top[:, np.newaxis] + (t_bot - t_top)[:, np.newaxis] * steps[np.newaxis, :]
    ctrs = np.repeat(centers, num_samples, axis=0)
    dirs = np.repeat(directions, num_samples, axis=0)
    f = height_diff(ctrs, dirs, ts.ravel()).reshape(n_rays, num_samples)
    with np.errstate(invalid="ignore"):
        crossing = (f[:, :-1] >= 0) & (f[:, 1:] <= 0)
    success &= np.any(crossing, axis=1)
    first = np.argmax(crossing, axis=1)
    rows = np.arange(n_rays)
    lo, hi = ts[rows, first], ts[rows, first + 1]

    # bisection on the crossing interval
    xyz = np.zeros((n_rays, 3))
    if not np.any(success):
        return xyz, success
    lo, hi = lo[success], hi[success]
    ctrs, dirs = centers[success], directions[success]
    max_len = np.max(hi - lo)
    n_iter = 0 if max_len <= height_error_tol else int(np.ceil(np.log2(max_len / height_error_tol)))
    valid = np.ones(lo.shape, dtype=bool)
    for _ in range(min(n_iter, 100)):
        mid = 0.5 * (lo + hi)
        fm = height_diff(ctrs, dirs, mid)
        valid &= np.isfinite(fm)
        above = fm >= 0
        lo = np.where(above, mid, lo)
        hi = np.where(above, hi, mid)
    t = 0.5 * (lo + hi)
    idx = np.flatnonzero(success)
    success[idx[~valid]] = False
    xyz[idx[valid]] = ctrs[valid] + t[valid, np.newaxis] * dirs[valid]
    return xyz, success


def intersect_ray_with_dem(dem, center, direction, height_error_tol=1e-3):
    """
    Intersect a single ray with a DEM

    Returns:
        xyz: 3-valued ECEF intersection (zeros if not found)
        success: boolean, False if the ray misses the DEM or hits invalid pixels
    """
    xyz, success = intersect_rays_with_dem(dem, center, direction, height_error_tol=height_error_tol)
    return xyz[0], bool(success[0])
