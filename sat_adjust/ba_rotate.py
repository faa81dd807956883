"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements a series of functions for the representation of rotations in the 3d space
Camera poses are stored as axis-angle vectors (3 values), which is the representation used
in the parameter blocks of the bundle adjustment
"""

import numpy as np


def quaternion_to_R(q0, q1, q2, q3):
    """
    Converts a quaternion (q0, q1, q2, q3) into 3x3 rotation matrix (R)
    Note that a quaternion (qw, qx, qy, qz) may be equivalently noted as (q0, q1, q2, q3)
    Source: https://en.wikipedia.org/wiki/Conversion_between_quaternions_and_Euler_angles
    """
    n = np.sqrt(q0 ** 2 + q1 ** 2 + q2 ** 2 + q3 ** 2)
    q0, q1, q2, q3 = q0 / n, q1 / n, q2 / n, q3 / n
    R = np.zeros((3, 3), dtype=np.float64)
    R[0, 0] = q0 ** 2 + q1 ** 2 - q2 ** 2 - q3 ** 2
    R[1, 1] = q0 ** 2 - q1 ** 2 + q2 ** 2 - q3 ** 2
    R[2, 2] = q0 ** 2 - q1 ** 2 - q2 ** 2 + q3 ** 2
    R[0, 1] = 2.0 * (q1 * q2 - q0 * q3)
    R[0, 2] = 2.0 * (q0 * q2 + q1 * q3)
    R[1, 2] = 2.0 * (q2 * q3 - q0 * q1)
    R[1, 0] = 2.0 * (q1 * q2 + q0 * q3)
    R[2, 0] = 2.0 * (q1 * q3 - q0 * q2)
    R[2, 1] = 2.0 * (q0 * q1 + q2 * q3)
    return R


def R_to_quaternion(R):
    """
    Converts a 3x3 rotation matrix (R) into quaternion (q0, q1, q2, q3), with q0 >= 0
    Uses the branch of largest diagonal value to stay stable near 180 degree rotations
    """
    tr = R[0, 0] + R[1, 1] + R[2, 2]
    if tr > 0:
        s = 2.0 * np.sqrt(tr + 1.0)
        q0 = 0.25 * s
        q1 = (R[2, 1] - R[1, 2]) / s
        q2 = (R[0, 2] - R[2, 0]) / s
        q3 = (R[1, 0] - R[0, 1]) / s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q0 = (R[2, 1] - R[1, 2]) / s
        q1 = 0.25 * s
        q2 = (R[0, 1] + R[1, 0]) / s
        q3 = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q0 = (R[0, 2] - R[2, 0]) / s
        q1 = (R[0, 1] + R[1, 0]) / s
        q2 = 0.25 * s
        q3 = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q0 = (R[1, 0] - R[0, 1]) / s
        q1 = (R[0, 2] + R[2, 0]) / s
        q2 = (R[1, 2] + R[2, 1]) / s
        q3 = 0.25 * s
    if q0 < 0:
        q0, q1, q2, q3 = -q0, -q1, -q2, -q3
    return q0, q1, q2, q3


def euler_angles_from_R(R):
    """
    Converts a 3x3 rotation matrix (R) to euler angles representation
    Source: https://www.learnopencv.com/rotation-matrix-to-euler-angles/
    """
    sy = np.sqrt(R[0, 0] * R[0, 0] + R[1, 0] * R[1, 0])
    singular = sy < 1e-6
    if not singular:
        roll = np.arctan2(R[2, 1], R[2, 2])
        pitch = np.arctan2(-R[2, 0], sy)
        yaw = np.arctan2(R[1, 0], R[0, 0])
    else:
        roll = np.arctan2(-R[1, 2], R[1, 1])
        pitch = np.arctan2(-R[2, 0], sy)
        yaw = 0
    return roll, pitch, yaw


def euler_angles_to_R(roll, pitch, yaw):
    """
    Recover the 3x3 rotation matrix R from the Euler angles representation (radians)
    """
    t = np.float64
    Rx = np.array([[1, 0, 0], [0, np.cos(roll), -np.sin(roll)], [0, np.sin(roll), np.cos(roll)]], dtype=t)
    Ry = np.array([[np.cos(pitch), 0, np.sin(pitch)], [0, 1, 0], [-np.sin(pitch), 0, np.cos(pitch)]], dtype=t)
    Rz = np.array([[np.cos(yaw), -np.sin(yaw), 0], [np.sin(yaw), np.cos(yaw), 0], [0, 0, 1]], dtype=t)
    return Rz @ Ry @ Rx


def axis_angle_to_R(axis_angle):
    """
    Recover the 3x3 rotation matrix R from an axis-angle vector,
    i.e. the rotation axis scaled by the rotation angle in radians (Rodrigues formula)
    """
    axis_angle = np.asarray(axis_angle, dtype=np.float64)
    theta = np.linalg.norm(axis_angle)
    if theta < 1e-12:
        # first order expansion, keeps the map smooth for numerical differentiation
        wx, wy, wz = axis_angle
        return np.array([[1.0, -wz, wy], [wz, 1.0, -wx], [-wy, wx, 1.0]])
    x, y, z = axis_angle / theta
    ca, sa = np.cos(theta), np.sin(theta)
    C = 1 - ca
    xs, ys, zs, xC, yC, zC = x * sa, y * sa, z * sa, x * C, y * C, z * C
    xyC, yzC, zxC = x * yC, y * zC, z * xC
    r1 = [x * xC + ca, xyC - zs, zxC + ys]
    r2 = [xyC + zs, y * yC + ca, yzC - xs]
    r3 = [zxC - ys, yzC + xs, z * zC + ca]
    return np.array([r1, r2, r3])


def axis_angle_from_R(R):
    """
    Convert a 3x3 rotation matrix R to an axis-angle vector
    Goes through the quaternion to handle rotations close to 0 and to 180 degrees
    """
    q0, q1, q2, q3 = R_to_quaternion(R)
    v = np.array([q1, q2, q3])
    s = np.linalg.norm(v)
    if s < 1e-12:
        return 2.0 * v
    theta = 2.0 * np.arctan2(s, q0)
    return v / s * theta


def roll_pitch_yaw(roll, pitch, yaw):
    """
    Rotation matrix from roll, pitch and yaw angles expressed in degrees
    The matrix is the product roll * pitch * yaw, each rotating around the x, y and z axis
    """
    r, p, y = np.radians(roll), np.radians(pitch), np.radians(yaw)
    roll_m = np.array([[1, 0, 0], [0, np.cos(r), -np.sin(r)], [0, np.sin(r), np.cos(r)]])
    pitch_m = np.array([[np.cos(p), 0, np.sin(p)], [0, 1, 0], [-np.sin(p), 0, np.cos(p)]])
    yaw_m = np.array([[np.cos(y), -np.sin(y), 0], [np.sin(y), np.cos(y), 0], [0, 0, 1]])
    return roll_m @ pitch_m @ yaw_m


def rotation_xy():
    """
    Rotation by 90 degrees in the xy plane
    Right-multiplied to a matrix with columns (along, across, down) it makes along track the camera y axis
    """
    T = np.zeros((3, 3))
    T[0, 1] = 1
    T[1, 0] = -1
    T[2, 2] = 1
    return T
