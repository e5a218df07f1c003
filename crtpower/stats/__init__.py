"""Data generation, model fitting and closed-form power modules."""

from . import analysis as analysis
from . import analytic as analytic
from . import data_generation as data_generation
from . import gee as gee
from . import mixed_models as mixed_models
