"""Statistical engines: data generation, variance structures, df and power."""

from . import data_generation as data_generation
from . import mixed_models as mixed_models
from . import power as power
from . import satterthwaite as satterthwaite
from . import variance_structure as variance_structure
