import argparse
import os
import sys

from sat_adjust import ba_core, ba_costs, ba_models, ba_params, ba_pipeline, cam_utils
from sat_adjust import dem_utils, geo_utils, loader, pc_align, sat_sim

ERROR_TYPES = (
    loader.Error,
    cam_utils.Error,
    ba_models.Error,
    ba_core.Error,
    ba_params.Error,
    ba_pipeline.Error,
    ba_costs.Error,
    dem_utils.Error,
    geo_utils.Error,
    pc_align.Error,
    sat_sim.Error,
)

REQUIRED_KEYS = {
    "bundle_adjust": ["output_dir"],
    "pc_align": ["output_dir", "reference", "source"],
    "sat_sim": ["output_dir", "dem"],
}


def read_network(opt, camera_paths, datum):
    """
    Control network of the bundle adjustment, from a csv of observations
    (track_index, camera_index, col, row and optionally the pixel sigma) and an optional gcp file
    """
    network = ba_params.ControlNetwork()
    if opt.get("observations") is not None:
        values = loader.read_csv(opt["observations"], min_cols=4, keep_all_cols=True)
        sigma = values[:, 4] if values.shape[1] > 4 else opt.get("pixel_sigma", 1.0)
        pts_ind, cam_ind, pts2d = values[:, 0].astype(int), values[:, 1].astype(int), values[:, 2:4]
        network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pixel_sigma=sigma)
    if opt.get("gcp_file") is not None:
        n_gcp = network.add_gcp_file(opt["gcp_file"], camera_paths, datum)
        loader.flush_print("{} ground control points read from {}".format(n_gcp, opt["gcp_file"]))
    return network


def read_disparities(opt, datum):
    disparities = []
    for d in opt.get("disparities", []):
        dx, dy = loader.read_disparity(d["disparity"])
        reference = pc_align.read_cloud_points(d["reference_terrain"], datum, d.get("csv_format", "xyz"))
        disparities.append(
            {
                "left": int(d["left"]),
                "right": int(d["right"]),
                "disparity": ba_costs.DisparityInterpolator(dx, dy),
                "reference_xyz": reference,
            }
        )
    return disparities


def run_bundle_adjust(opt):
    if opt.get("camera_list") is not None:
        camera_paths = loader.load_list_of_paths(opt["camera_list"])
    else:
        camera_paths = opt.get("cameras", [])
    if len(camera_paths) == 0:
        raise loader.Error("No input cameras were specified")
    datum = geo_utils.Datum(opt.get("datum", "WGS_1984"))
    cameras = loader.load_cameras(camera_paths, datum=datum)
    network = read_network(opt, camera_paths, datum)
    dem = None if opt.get("dem") is None else dem_utils.load_interpolation_ready_dem(opt["dem"], datum=datum)
    disparities = read_disparities(opt, datum)
    ba_config = opt.get("ba_config", opt)
    results = ba_pipeline.solve(cameras, network, ba_config, datum=datum, dem=dem, disparities=disparities,
                                out_dir=opt["output_dir"], camera_names=camera_paths)
    if not results["converged"]:
        print("WARNING: Bundle adjustment did not converge, outputs were written anyway")


def run_pc_align(opt):
    config = opt.get("pc_align_config", opt)
    pc_align.align(opt["reference"], opt["source"], config, out_dir=opt["output_dir"])


def run_sat_sim(opt):
    config = dict(opt.get("sat_sim_config", opt))
    if config.get("out_prefix") is None:
        config["out_prefix"] = os.path.join(opt["output_dir"], "sat_sim")
    sat_sim.synthesize(config, opt["dem"], opt.get("ortho"))


def main():

    parser = argparse.ArgumentParser(
        description="Bundle adjustment, point cloud alignment and orbit synthesis for satellite images"
    )
    subparsers = parser.add_subparsers(dest="command")
    for name, help_str in [
        ("bundle_adjust", "refine cameras and 3d points from feature tracks and ground control points"),
        ("pc_align", "align a source point cloud to a reference point cloud"),
        ("sat_sim", "synthesize an orbit with its cameras and, optionally, images"),
    ]:
        sub = subparsers.add_parser(name, help=help_str)
        sub.add_argument(
            "config",
            metavar="config.json",
            help="path to a json file containing the input files, the output_dir and the configuration parameters.",
        )

    # parse command line arguments
    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return 1

    try:
        # load options from config file and copy config file to output_dir
        opt = loader.load_dict_from_json(args.config)
        for k in REQUIRED_KEYS[args.command]:
            if k not in opt:
                raise loader.Error("Missing key in configuration: {}".format(k))
        os.makedirs(opt["output_dir"], exist_ok=True)
        loader.save_dict_to_json(opt, os.path.join(opt["output_dir"], os.path.basename(args.config)))

        if args.command == "bundle_adjust":
            run_bundle_adjust(opt)
        elif args.command == "pc_align":
            run_pc_align(opt)
        else:
            run_sat_sim(opt)
    except ERROR_TYPES as e:
        print("ERROR: {}".format(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
