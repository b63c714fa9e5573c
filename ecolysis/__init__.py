"""Ecolysis: stochastic population viability analysis (PVA) engine.

Monte Carlo projection of a stage-structured population over a finite
horizon, in one of two mutually exclusive modes:
  - Population-level: aggregate stage abundance vector with demographic
    (binomial/Poisson) and environmental (rate-draw) stochasticity
  - Individual-based: explicit agents with pedigree, Mendelian inheritance
    at neutral multi-allelic loci, mating and culling policies
  - Shared: density dependence, catastrophes, quasi-extinction threshold,
    seeded per-replicate random streams, parallel replicate orchestration
    and aggregation into extinction-risk and diversity curves

Typical use:
    from ecolysis.config import load_config
    from ecolysis.orchestrator import run_pva

    record = run_pva(load_config("configs/default.yaml"))
    record.extinction_probability
"""

__version__ = "0.1.0"
