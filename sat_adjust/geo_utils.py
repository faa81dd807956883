"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script consists of a series of functions dedicated to deal with different geographic coordinate systems:
geodetic (lon, lat, height above the datum), geocentric (ECEF) and projected (map) coordinates
"""

import numpy as np
import pyproj


class Error(Exception):
    pass


# semi-major and semi-minor axes, in meters
KNOWN_DATUMS = {
    "WGS_1984": (6378137.0, 6356752.314245179),
    "D_MOON": (1737400.0, 1737400.0),
    "D_MARS": (3396190.0, 3376200.0),
}


class Datum:
    def __init__(self, name="WGS_1984", semi_major_axis=None, semi_minor_axis=None):
        """
        Reference ellipsoid defining the mapping between geodetic and geocentric coordinates

        Args:
            name: string, one of the known datums (WGS_1984, D_MOON, D_MARS) or a custom name
            semi_major_axis, semi_minor_axis (optional): floats in meters, required for custom datums
        """
        if semi_major_axis is None or semi_minor_axis is None:
            if name not in KNOWN_DATUMS:
                raise Error("Unknown datum: {}. Specify the semi-axes explicitly".format(name))
            semi_major_axis, semi_minor_axis = KNOWN_DATUMS[name]
        if semi_major_axis <= 0 or semi_minor_axis <= 0:
            raise Error("The datum semi-axes must be positive")
        self.name = name
        self.a = float(semi_major_axis)
        self.b = float(semi_minor_axis)
        self.e2 = 1.0 - (self.b / self.a) ** 2

    @classmethod
    def from_crs(cls, crs):
        """
        Build the datum of a pyproj CRS (or anything accepted by pyproj.CRS)
        """
        ellipsoid = pyproj.CRS(crs).ellipsoid
        if ellipsoid is None:
            raise Error("The coordinate system {} has no ellipsoid".format(crs))
        return cls(ellipsoid.name, ellipsoid.semi_major_metre, ellipsoid.semi_minor_metre)

    def __repr__(self):
        return "Datum({}, a={}, b={})".format(self.name, self.a, self.b)

    def geodetic_to_cartesian(self, llh):
        """
        convert from geodetic (lon, lat, height) to geocentric coordinates (x, y, z)
        llh can be a single 3-valued vector or a Nx3 array
        """
        llh = np.asarray(llh, dtype=np.float64)
        lon, lat, alt = llh[..., 0], llh[..., 1], llh[..., 2]
        rad_lat = lat * (np.pi / 180.0)
        rad_lon = lon * (np.pi / 180.0)
        v = self.a / np.sqrt(1 - self.e2 * np.sin(rad_lat) * np.sin(rad_lat))
        x = (v + alt) * np.cos(rad_lat) * np.cos(rad_lon)
        y = (v + alt) * np.cos(rad_lat) * np.sin(rad_lon)
        z = (v * (1 - self.e2) + alt) * np.sin(rad_lat)
        return np.stack([x, y, z], axis=-1)

    def cartesian_to_geodetic(self, xyz):
        """
        convert from geocentric coordinates (x, y, z) to geodetic (lon, lat, height)
        xyz can be a single 3-valued vector or a Nx3 array
        """
        xyz = np.asarray(xyz, dtype=np.float64)
        x, y, z = xyz[..., 0], xyz[..., 1], xyz[..., 2]
        a, b = self.a, self.b
        esq = self.e2
        ep2 = (a ** 2 - b ** 2) / b ** 2
        p = np.sqrt((x ** 2) + (y ** 2))
        th = np.arctan2(a * z, b * p)
        lon = np.arctan2(y, x)
        lat = np.arctan2((z + ep2 * b * (np.sin(th) ** 3)), (p - esq * a * (np.cos(th) ** 3)))
        # two fixed point refinements of the Bowring estimate, to be exact far above the surface
        for _ in range(2):
            N = a / np.sqrt(1 - esq * np.sin(lat) ** 2)
            alt = p * np.cos(lat) + z * np.sin(lat) - a ** 2 / N
            lat = np.arctan2(z, p * (1 - esq * N / (N + alt)))
        N = a / np.sqrt(1 - esq * np.sin(lat) ** 2)
        alt = p * np.cos(lat) + z * np.sin(lat) - a ** 2 / N
        return np.stack([np.degrees(lon), np.degrees(lat), alt], axis=-1)

    def ecef_to_ned_matrix(self, llh):
        """
        3x3 matrix that maps a vector in ECEF coordinates to the local North-East-Down frame at llh
        """
        lon, lat = np.radians(llh[0]), np.radians(llh[1])
        return ned_to_ecef_matrix(lon, lat).T

    def ned_to_ecef_matrix(self, llh):
        return ned_to_ecef_matrix(np.radians(llh[0]), np.radians(llh[1]))


def ned_to_ecef_matrix(rad_lon, rad_lat):
    """
    Columns are the North, East and Down unit vectors expressed in ECEF
    """
    sl, cl = np.sin(rad_lon), np.cos(rad_lon)
    sp, cp = np.sin(rad_lat), np.cos(rad_lat)
    north = np.array([-sp * cl, -sp * sl, cp])
    east = np.array([-sl, cl, 0.0])
    down = np.array([-cp * cl, -cp * sl, -sp])
    return np.vstack([north, east, down]).T


class ProjectionTransform:
    def __init__(self, crs):
        """
        Conversion between a projected (map) coordinate system and lon-lat on the same ellipsoid
        The pyproj transformers are built once, they are expensive to create
        """
        self.crs = pyproj.CRS(crs)
        geographic = self.crs.geodetic_crs
        self.to_lonlat = pyproj.Transformer.from_crs(self.crs, geographic, always_xy=True)
        self.from_lonlat = pyproj.Transformer.from_crs(geographic, self.crs, always_xy=True)
        self.is_geographic = self.crs.is_geographic

    def point_to_lonlat(self, xs, ys):
        if self.is_geographic:
            return np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64)
        lons, lats = self.to_lonlat.transform(xs, ys)
        return np.asarray(lons, dtype=np.float64), np.asarray(lats, dtype=np.float64)

    def lonlat_to_point(self, lons, lats):
        if self.is_geographic:
            return np.asarray(lons, dtype=np.float64), np.asarray(lats, dtype=np.float64)
        xs, ys = self.from_lonlat.transform(lons, lats)
        return np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64)


def proj_to_ecef(proj_tf, datum, proj):
    """
    Convert from projected coordinates (x, y, height above datum) to ECEF
    proj can be a 3-valued vector or a Nx3 array
    """
    proj = np.asarray(proj, dtype=np.float64)
    lons, lats = proj_tf.point_to_lonlat(proj[..., 0], proj[..., 1])
    llh = np.stack([lons, lats, proj[..., 2]], axis=-1)
    return datum.geodetic_to_cartesian(llh)


def ecef_to_proj(proj_tf, datum, xyz):
    """
    Convert from ECEF to projected coordinates (x, y, height above datum)
    """
    llh = datum.cartesian_to_geodetic(xyz)
    xs, ys = proj_tf.lonlat_to_point(llh[..., 0], llh[..., 1])
    return np.stack([xs, ys, llh[..., 2]], axis=-1)


def lonlat_bbox(llh):
    """
    Lon-lat bounding box of a Nx3 array of geodetic coordinates, as (min_lon, min_lat, max_lon, max_lat)
    """
    return llh[:, 0].min(), llh[:, 1].min(), llh[:, 0].max(), llh[:, 1].max()
