"""Container-level batch correction.

Available Methods
-----------------
- integrate_ruviii: RUV-III with negative controls and (pseudo-)replicates,
  choosing the number of unwanted factors by silhouette width.

Examples
--------
>>> from scruv.integration import integrate_ruviii
>>> container = integrate_ruviii(container, batch_key="batch", ctl="stable", replicate_key="pseudo_rep")

References
----------
- RUV-III: Molania et al. Nucleic Acids Research (2019)
- scMerge: Lin et al. PNAS (2019)
"""

from scruv.integration.ruviii import integrate_ruviii

__all__ = [
    "integrate_ruviii",
]
