from .vm import VM
from .order import Order
from .image import Image
