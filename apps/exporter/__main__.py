"""
Exporter Module Entry Point

Allows execution via: python -m apps.exporter
"""

from apps.exporter.consumer import run

if __name__ == "__main__":
    run()
