"""EMS quality dashboard: KPIs with SPC, QI campaigns and field training."""

__version__ = "1.0.0"
