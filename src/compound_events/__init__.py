"""
Compound Event Design Framework.

Joint simulation and design-event estimation for compound environmental
hazards (e.g. rainfall and storm surge). Generalized Pareto tails, bulk
marginal distributions and fitted copulas are combined to simulate joint
realizations and to derive "most likely", "full dependence" and ensemble
design events along a joint return-period isoline.
"""

__version__ = "0.1.0"
