"""gaugecam: water level measurement from a bowtie calibration target."""

__version__ = "0.1.0"
