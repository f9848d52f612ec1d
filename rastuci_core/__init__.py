"""
Rastuci Core - 订单生命周期与支付/物流对账服务
"""

__version__ = "1.0.0"
