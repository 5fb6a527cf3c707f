from geomx_ir.infrastructure.data.data_loader import GeoMxDataLoader
from geomx_ir.infrastructure.data.data_saver import GeoMxDataSaver

__all__ = ["GeoMxDataLoader", "GeoMxDataSaver"]
