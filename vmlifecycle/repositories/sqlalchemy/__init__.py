from .sqlalchemy_vm_repository import SqlalchemyVMRepository
from .sqlalchemy_order_repository import SqlalchemyOrderRepository
from .sqlalchemy_image_repository import SqlalchemyImageRepository
