"""epigrid: compartmental epidemic dynamics on a spatial grid.

A metapopulation model coupling:
  - Named compartment graphs (SIR, SIS, SEIR, SEIRS, SEI2HRD, SEI3HRD)
  - Sparse per-capita transition operators compiled from rate parameters
  - Direct (force-of-infection) and environmental-reservoir transmission
  - Age-structured mixing and frequency/density-dependent transmission
  - Virus dispersal between grid cells, with scenario perturbations
"""

__version__ = "0.1.0"
