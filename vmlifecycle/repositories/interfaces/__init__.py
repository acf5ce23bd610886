from .vm import IVMRepository
from .order import IOrderRepository
from .image import IImageRepository
