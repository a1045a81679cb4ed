"""
jahmm - Hidden Markov Models with zero-inflated negative multinomial
emissions for ChIP-seq count profiles.
"""

__version__ = "0.1.0"

from jahmm.core.model import Jahmm, FitStatus, SeedEstimate, seed_model
from jahmm.core.observations import ChIP, MISSING
from jahmm.core.emission import EmissionConfig, OutputMode, index_series, zinm_prob, mixture_prob
