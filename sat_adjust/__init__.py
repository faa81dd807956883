from sat_adjust.ba_pipeline import solve
from sat_adjust.pc_align import align
from sat_adjust.sat_sim import synthesize

__version__ = "0.1.0"
