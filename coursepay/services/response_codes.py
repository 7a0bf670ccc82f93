"""VNPay vnp_ResponseCode table."""

from __future__ import annotations

from coursepay.models.gateway import SUCCESS_CODE

UNKNOWN_CODE_MESSAGE = "Mã lỗi không xác định"

RESPONSE_CODES: dict[str, str] = {
    SUCCESS_CODE: "Giao dịch thành công",
    "07": "Trừ tiền thành công. Giao dịch bị nghi ngờ (liên quan tới lừa đảo, giao dịch bất thường).",
    "09": "Giao dịch không thành công do: Thẻ/Tài khoản của khách hàng chưa đăng ký dịch vụ InternetBanking tại ngân hàng.",
    "10": "Giao dịch không thành công do: Khách hàng xác thực thông tin thẻ/tài khoản không đúng quá 3 lần",
    "11": "Giao dịch không thành công do: Đã hết hạn chờ thanh toán. Xin quý khách vui lòng thực hiện lại giao dịch.",
    "12": "Giao dịch không thành công do: Thẻ/Tài khoản của khách hàng bị khóa.",
    "13": "Giao dịch không thành công do Quý khách nhập sai mật khẩu xác thực giao dịch (OTP). Xin quý khách vui lòng thực hiện lại giao dịch.",
    "24": "Giao dịch không thành công do: Khách hàng hủy giao dịch",
    "51": "Giao dịch không thành công do: Tài khoản của quý khách không đủ số dư để thực hiện giao dịch.",
    "65": "Giao dịch không thành công do: Tài khoản của Quý khách đã vượt quá hạn mức giao dịch trong ngày.",
    "75": "Ngân hàng thanh toán đang bảo trì.",
    "79": "Giao dịch không thành công do: KH nhập sai mật khẩu thanh toán quá số lần quy định. Xin quý khách vui lòng thực hiện lại giao dịch",
    "99": "Các lỗi khác (lỗi còn lại, không có trong danh sách mã lỗi đã liệt kê)",
}

# Bank/method codes accepted as vnp_BankCode
PAYMENT_METHODS: list[dict[str, str]] = [
    {"code": "VNPAYQR", "name": "VNPay QR Code"},
    {"code": "VNBANK", "name": "Domestic ATM/Internet Banking"},
    {"code": "INTCARD", "name": "International Card"},
    {"code": "VISA", "name": "Visa"},
    {"code": "MASTERCARD", "name": "MasterCard"},
    {"code": "JCB", "name": "JCB"},
    {"code": "BIDV", "name": "BIDV"},
    {"code": "VCB", "name": "Vietcombank"},
    {"code": "VIETINBANK", "name": "VietinBank"},
    {"code": "TCB", "name": "Techcombank"},
    {"code": "MB", "name": "MBBank"},
    {"code": "VPB", "name": "VPBank"},
    {"code": "ACB", "name": "ACB"},
    {"code": "VIB", "name": "VIB"},
    {"code": "SACOMBANK", "name": "Sacombank"},
    {"code": "EXIMBANK", "name": "Eximbank"},
    {"code": "MSBANK", "name": "MSBank"},
    {"code": "NAMABANK", "name": "NamABank"},
    {"code": "OCB", "name": "OCB"},
    {"code": "SHB", "name": "SHB"},
    {"code": "TPBANK", "name": "TPBank"},
]


def response_message(code: str | None) -> str:
    """Human-readable message for a response code, default for unknown codes"""
    if code is None:
        return UNKNOWN_CODE_MESSAGE
    return RESPONSE_CODES.get(code, UNKNOWN_CODE_MESSAGE)


def is_success(code: str | None) -> bool:
    return code == SUCCESS_CODE
