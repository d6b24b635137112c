from qris_shop.models import PaymentRequest, Product


def rupiah(amount: int) -> str:
    return "Rp " + f"{amount:,}".replace(",", ".")


def deposit_settled(request: PaymentRequest, balance: int) -> str:
    return (
        "✅ Deposit berhasil!\n\n"
        f"💰 Jumlah: {rupiah(request.base_amount)}\n"
        f"💵 Saldo sekarang: {rupiah(balance)}\n\n"
        "Terima kasih!"
    )


def account_details(units: list[str]) -> str:
    lines = "\n".join(f"{i}. {unit}" for i, unit in enumerate(units, 1))
    return f"🎉 Detail Akun:\n{lines}\n\n⚠️ Simpan data ini dengan baik!"


def purchase_settled(request: PaymentRequest, units: list[str]) -> str:
    p = request.purchase
    return (
        "✅ Pembayaran QRIS diterima!\n\n"
        f"📦 {p.product_name}\n"
        f"📦 Jumlah: {p.quantity}\n"
        f"💰 Total: {rupiah(request.payable_total)}\n\n"
        + account_details(units)
    )


def request_expired(request: PaymentRequest) -> str:
    return (
        "⌛ QRIS kedaluwarsa.\n\n"
        f"Tagihan {rupiah(request.payable_total)} tidak dibayar tepat waktu. "
        "Silakan buat pesanan baru jika masih ingin membeli."
    )


def operator_failure(request: PaymentRequest) -> str:
    text = (
        "⚠️ Pembayaran diterima tetapi pesanan GAGAL diproses\n"
        f"ID: {request.id}\n"
        f"user_id: {request.user_id}\n"
        f"jenis: {request.kind.value}\n"
        f"total dibayar: {rupiah(request.payable_total)}\n"
        f"ref: {request.notification_ref}\n"
        f"alasan: {request.failure}"
    )
    if request.purchase:
        p = request.purchase
        text += f"\nproduk: {p.product_name} ({p.code}) x{p.quantity}"
    return text


def qris_caption(request: PaymentRequest) -> str:
    if request.purchase:
        p = request.purchase
        head = (
            "📱 PEMBAYARAN QRIS\n\n"
            f"📦 Produk: {p.product_name}\n"
            f"📦 Jumlah: {p.quantity}\n"
            f"💰 Subtotal: {rupiah(request.base_amount)}\n"
        )
    else:
        head = "💳 DEPOSIT SALDO\n\n" f"💰 Jumlah: {rupiah(request.base_amount)}\n"
    return (
        head
        + f"🔢 Kode unik: +{rupiah(request.disambiguator)}\n"
        + f"💳 Total bayar: {rupiah(request.payable_total)}\n\n"
        + "✨ QRIS dinamis, nominal otomatis terisi!\n"
        + "⏰ Menunggu pembayaran...\n\n"
        + "Scan QR code di atas untuk bayar"
    )


def product_card(product: Product, qty: int, stock: int) -> str:
    return (
        f"🛒 {product.name}\n"
        f"🔖 Code: {product.code}\n"
        f"📊 Stok: {stock}\n\n"
        f"💰 Harga Satuan: {rupiah(product.price)}\n"
        f"📦 Jumlah: {qty}\n"
        f"💵 Total: {rupiah(product.price * qty)}\n"
        f"📝 {product.detail}\n\n"
        "Pilih metode pembayaran:"
    )
