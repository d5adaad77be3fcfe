from .rank_selection import analyze_spectrum, energy_retained, select_preview_rank
from .metrics import estimate_flops, evaluate_agreement, exact_fraction, top_k_overlap
