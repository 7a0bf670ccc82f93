"""CoursePay - VNPay course payments"""

__version__ = "1.0.0"
