"""metaepi: stochastic metapopulation epidemic engine.

A daily, spatially explicit tau-leaping simulator coupling:
  - Compartmental disease progression (SEIR and an 11-class extended model)
  - Frequency- or density-dependent transmission with demographic noise
  - Commuting movement between populations over an exponential distance kernel
  - Transient infectious immigration
  - Optional back-solving of the transmission rate from a target R

Every realization is driven by one seeded generator and is reproducible
bit-for-bit.
"""

__version__ = "0.1.0"
