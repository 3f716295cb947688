"""
餐食订阅生命周期与支付对账服务
"""

__version__ = "1.0.0"
