import os, sys

from passport_scan.services.encoder import encode, rings
from passport_scan.services.qr import render_rings


def main():
    if len(sys.argv) < 2 or not sys.argv[1].strip():
        print("Usage: make_rings.py <CODE> [OUT]")
        sys.exit(1)
    code = sys.argv[1].strip()
    out = sys.argv[2] if len(sys.argv) > 2 else os.environ.get("OUT", "rings.png")

    bits = encode(code)
    inner, middle, outer = rings(bits)
    print("bits   :", bits.bits)
    print("inner  :", inner)
    print("middle :", middle)
    print("outer  :", outer)
    render_rings(bits).save(out)
    print("rings saved to", out)


if __name__ == "__main__":
    main()
