"""Core HMM algorithms, emission model and Baum-Welch training."""

from jahmm.core.hmm import forward, backward, fwdb, viterbi, block_fwdb, block_viterbi
from jahmm.core.emission import EmissionConfig, OutputMode, index_series, zinm_prob, mixture_prob
from jahmm.core.model import Jahmm, FitStatus, SeedEstimate, seed_model, update_trans
from jahmm.core.observations import ChIP, MISSING
