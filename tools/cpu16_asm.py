#!/usr/bin/env python3
r"""
cpu16_asm.py  –  Two-pass assembler for the 16-register flag-conditional CPU
============================================================================

Usage:
    python3 cpu16_asm.py [input.asm | -] [-o output.hex] [-d] [-w]
                         [--origin ADDR] [--exact-labels]

Output:
    compact (default)   one uppercase hex token per line: op, out, in, imm8
                        and, when an input slot holds a word immediate, imm16
    debug (-d)          one line per instruction, prefixed with its word
                        address:  00000000: 00 15 10 05
    words (-w)          group the fixed bytes into two 16-bit tokens
                        (op+out, in+imm8) instead of four byte tokens

Source syntax:
    [label:] mnemonic[.cond] [operand[, operand]*]   ; comment
    (";" comments extend the plain line format, in which a comment-only
    line is rejected as an unknown mnemonic)

    Mnemonics       mov  dst, src
                    add  dst, src1, src2
    Conditions      .c .v .z .s   execute when flag set
                    .nc .nv .nz .ns   execute when flag clear
                    .nop  never execute;  no suffix: always
    Registers       ir1 ir2 ir3 flag iv a b c d e mem bank addr ip sp zr
    Immediates      5  0x1F  017  -1      (byte if 0..255, else word)
                    byte N  /  word N      force the immediate width
                    byte label / word label   label reference (width required)

Instruction layout (one word = 2 bytes, addresses count words):
    op    opcode (mov = 0x00, add = 0x12)
    out   cond << 4 | dst
    in    slot1 << 4 | slot2   each slot is a register index, or the
                               immediate tag 1 (byte) / 2 (word)
    imm8  byte immediate payload
    imm16 word immediate payload (present only when a slot is tagged 2)
"""

import re
import sys
import argparse

# ── ISA tables ────────────────────────────────────────────────────────────────

MAX_OPERANDS = 4
ORIGIN       = 0

REGISTERS = (
    'ir1', 'ir2', 'ir3',  'flag',
    'iv',  'a',   'b',    'c',
    'd',   'e',   'mem',  'bank',
    'addr', 'ip', 'sp',   'zr',
)
REGISTER_INDEX = {name: i for i, name in enumerate(REGISTERS)}

# Each entry: (opcode_byte, encoding_class)
OPCODES = {
    'mov': (0x00, 'mov'),
    'add': (0x12, 'add'),
}

# Condition codes (high nibble of the 'out' byte)
COND_NEVER  = 0
COND_ALWAYS = 1
FLAG_BITS = {'c': 2, 'v': 4, 'z': 6, 's': 8}   # +1 for the negated variant

# Operand kinds; the immediate kinds double as the 'in' nibble tags
KIND_REG   = 0
KIND_IMM8  = 1
KIND_IMM16 = 2

SIZE_PREFIXES = {'byte': KIND_IMM8, 'word': KIND_IMM16}

# Backpatch types
BP_ABS16 = 'abs16'
BP_ABS8  = 'abs8'

# ── Error / warning helpers ───────────────────────────────────────────────────

class AsmError(Exception):
    def __init__(self, msg, filename=None, lineno=None):
        super().__init__(msg)
        self.msg      = msg
        self.filename = filename
        self.lineno   = lineno
    def __str__(self):
        loc = ''
        if self.filename:
            loc = f'{self.filename}'
        if self.lineno is not None:
            loc += f':{self.lineno}'
        return f'Error ({loc}): {self.msg}' if loc else f'Error: {self.msg}'

warnings_issued = []

def warn(msg, filename=None, lineno=None):
    loc = ''
    if filename:
        loc = f'{filename}'
    if lineno is not None:
        loc += f':{lineno}'
    w = f'Warning ({loc}): {msg}' if loc else f'Warning: {msg}'
    warnings_issued.append(w)
    print(w, file=sys.stderr)

# ── Data model ────────────────────────────────────────────────────────────────

class Instruction:
    """One encoded instruction. ``in_`` is the packed input-slot byte."""
    __slots__ = ('op', 'out', 'in_', 'imm8', 'imm16')
    def __init__(self, op=0, out=0, in_=0, imm8=0, imm16=0):
        self.op    = op
        self.out   = out
        self.in_   = in_
        self.imm8  = imm8
        self.imm16 = imm16
    def __repr__(self):
        return (f'Instruction(op=0x{self.op:02X}, out=0x{self.out:02X}, '
                f'in_=0x{self.in_:02X}, imm8=0x{self.imm8:02X}, '
                f'imm16=0x{self.imm16:04X})')


class Backpatch:
    __slots__ = ('insn_idx', 'label', 'kind', 'filename', 'lineno')
    def __init__(self, insn_idx, label, kind, filename=None, lineno=None):
        self.insn_idx = insn_idx
        self.label    = label
        self.kind     = kind      # BP_ABS8 or BP_ABS16
        self.filename = filename
        self.lineno   = lineno

# ── Tokeniser / line parser ───────────────────────────────────────────────────

def strip_comment(line):
    """Remove ; comments."""
    i = line.find(';')
    return line if i < 0 else line[:i]

_MNEMONIC_RE = re.compile(r'[ \t\r\n]*([^ \t\r\n]+)')

def split_line(line):
    """
    Split one source line into (label, mnemonic, operands).

    The label is whatever precedes the first ':' (None if there is no colon
    or it is empty).  mnemonic is None for a blank or label-only line.
    At most MAX_OPERANDS comma-separated operands are returned, with
    surrounding whitespace trimmed.
    """
    line  = strip_comment(line)
    label = None
    if ':' in line:
        label, line = line.split(':', 1)
        label = label.strip() or None

    m = _MNEMONIC_RE.match(line)
    if not m:
        return label, None, []

    rest     = line[m.end():]
    operands = [t.strip() for t in re.split(r'[,\r\n]', rest) if t.strip()]
    return label, m.group(1), operands[:MAX_OPERANDS]

# ── Symbol resolvers ──────────────────────────────────────────────────────────

def register_index(name):
    """Return 0..15 for a register name (case-insensitive), else None."""
    return REGISTER_INDEX.get(name.strip().lower())

def register_name(index):
    return REGISTERS[index]

def parse_register(tok, filename=None, lineno=None):
    n = register_index(tok)
    if n is None:
        raise AsmError(f"Expected register, got '{tok.strip()}'", filename, lineno)
    return n

def condition_code(suffix, filename=None, lineno=None):
    """
    Map a mnemonic suffix to its 4-bit condition code.

    'nop' never executes (0); 'c', 'v', 'z', 's' execute when the flag is
    set (2, 4, 6, 8) and an 'n' prefix selects the flag-clear variant (+1).
    """
    s = suffix.lower()
    if s == 'nop':
        return COND_NEVER
    m = re.fullmatch(r'(n?)([cvzs])', s)
    if not m:
        raise AsmError(f"unknown flag: '{suffix}'", filename, lineno)
    return FLAG_BITS[m.group(2)] | (1 if m.group(1) else 0)

# ── Operand resolver ──────────────────────────────────────────────────────────

_INT_RE = re.compile(r'\s*([+-]?)(0[xX][0-9A-Fa-f]+|0[0-7]*|[1-9][0-9]*)')

def parse_int(text, filename=None, lineno=None):
    """
    Parse a C-style integer literal (0x hex, leading-0 octal, decimal).

    Returns None when the text does not start with a number at all (the
    caller treats it as a label), raises AsmError when a number is followed
    by anything else.
    """
    m = _INT_RE.match(text)
    if not m:
        return None
    if m.end() != len(text):
        raise AsmError(f"failed conversion to integer: '{text[m.end():]}'",
                       filename, lineno)
    digits = m.group(2)
    if digits[:2].lower() == '0x':
        v = int(digits, 16)
    elif digits.startswith('0'):
        v = int(digits, 8)
    else:
        v = int(digits, 10)
    return -v if m.group(1) == '-' else v

def parse_operand(tok, backpatches, insn_idx, filename=None, lineno=None):
    """
    Resolve one source operand to (kind, value).

    Without a size prefix a register name wins, then an integer literal
    sized by magnitude.  With 'byte'/'word' the prefix fixes the kind; a
    value that is not a number becomes a label reference, recorded in
    backpatches against insn_idx with a provisional value of 0.
    """
    parts = tok.split()
    if not parts:
        raise AsmError("empty operand", filename, lineno)
    if len(parts) > 2:
        raise AsmError(f"unexpected text after operand: '{' '.join(parts[2:])}'",
                       filename, lineno)
    prefix, value = (None, parts[0]) if len(parts) == 1 else parts

    if prefix is None:
        n = register_index(value)
        if n is not None:
            return KIND_REG, n

    kind = None
    if prefix is not None:
        kind = SIZE_PREFIXES.get(prefix.lower())
        if kind is None:
            raise AsmError(f"unknown prefix: '{prefix}'", filename, lineno)

    v = parse_int(value, filename, lineno)
    if v is None:
        if prefix is None:
            raise AsmError(f"prefix must be given for a label: '{value}'",
                           filename, lineno)
        bp_kind = BP_ABS8 if kind == KIND_IMM8 else BP_ABS16
        backpatches.append(Backpatch(insn_idx, value, bp_kind, filename, lineno))
        return kind, 0

    if kind is None:
        kind = KIND_IMM8 if 0 <= v <= 0xFF else KIND_IMM16
    return kind, v & 0xFFFF

def get_operand(mnemonic, operands, i, filename=None, lineno=None):
    if len(operands) <= i:
        raise AsmError(f"too few operands for '{mnemonic}': {len(operands)}",
                       filename, lineno)
    return operands[i]

# ── Instruction encoder ───────────────────────────────────────────────────────

def set_imm(insn, kind, value):
    if kind == KIND_IMM8:
        insn.imm8 = value & 0xFF
    elif kind == KIND_IMM16:
        insn.imm16 = value & 0xFFFF

def set_input(insn, in1, in2=None):
    """
    Fill the 'in' byte and immediate payloads from one or two resolved
    inputs.  Returns the instruction length used by pass 1 to advance the
    program counter; for a single immediate input this is the kind tag,
    not the emitted length (see emitted_words).
    """
    kind1, val1 = in1
    if in2 is None:
        if kind1 == KIND_REG:
            insn.in_ = val1 << 4
            return 2
        insn.in_ = kind1 << 4
        set_imm(insn, kind1, val1)
        return kind1

    kind2, val2 = in2
    if kind1 == KIND_REG and kind2 == KIND_REG:
        insn.in_ = (val1 << 4) | val2
        return 2
    if kind1 == KIND_REG:
        insn.in_ = (val1 << 4) | kind2
        set_imm(insn, kind2, val2)
        return 1 + kind2
    if kind2 == KIND_REG:
        insn.in_ = (kind1 << 4) | val2
        set_imm(insn, kind1, val1)
        return 1 + kind1

    # Two immediates share one imm8 and one imm16: the first input picks
    # its own field, the second takes the other one.
    if kind1 == KIND_IMM8:
        insn.in_ = (KIND_IMM8 << 4) | KIND_IMM16
        set_imm(insn, KIND_IMM8, val1)
        set_imm(insn, KIND_IMM16, val2)
    else:
        insn.in_ = (KIND_IMM16 << 4) | KIND_IMM8
        set_imm(insn, KIND_IMM16, val1)
        set_imm(insn, KIND_IMM8, val2)
    return 3

def encode_mov(opc, cond, operands, backpatches, insn_idx, filename=None, lineno=None):
    """mov dst, src"""
    dst = parse_register(get_operand('mov', operands, 0, filename, lineno),
                         filename, lineno)
    insn = Instruction(op=opc, out=(cond << 4) | dst)
    src = parse_operand(get_operand('mov', operands, 1, filename, lineno),
                        backpatches, insn_idx, filename, lineno)
    return insn, set_input(insn, src)

def encode_add(opc, cond, operands, backpatches, insn_idx, filename=None, lineno=None):
    """add dst, src1, src2"""
    dst = parse_register(get_operand('add', operands, 0, filename, lineno),
                         filename, lineno)
    insn = Instruction(op=opc, out=(cond << 4) | dst)
    in1 = parse_operand(get_operand('add', operands, 1, filename, lineno),
                        backpatches, insn_idx, filename, lineno)
    in2 = parse_operand(get_operand('add', operands, 2, filename, lineno),
                        backpatches, insn_idx, filename, lineno)
    if in1[0] == KIND_IMM16 and in2[0] == KIND_IMM16:
        raise AsmError("both literals are imm16", filename, lineno)
    return insn, set_input(insn, in1, in2)

ENCODERS = {
    'mov': (encode_mov, 2),
    'add': (encode_add, 3),
}

def encode_line(mnemonic, operands, backpatches, insn_idx, filename=None, lineno=None):
    """Encode one mnemonic[.cond] with its operands. Returns (insn, length)."""
    base, dot, suffix = mnemonic.lower().partition('.')
    cond = condition_code(suffix, filename, lineno) if dot else COND_ALWAYS

    if base not in OPCODES:
        raise AsmError(f"unknown mnemonic: '{base}'", filename, lineno)
    opc, enc = OPCODES[base]
    encoder, n_ops = ENCODERS[enc]

    if len(operands) > n_ops:
        warn(f"{base}: ignoring {len(operands) - n_ops} extra operand(s)",
             filename, lineno)
    return encoder(opc, cond, operands, backpatches, insn_idx, filename, lineno)

# ── Pass 1: encode, collect labels and backpatches ────────────────────────────

def emitted_words(insn):
    """Words the emitter writes for insn: 2, plus 1 when a slot is tagged imm16."""
    words = 2
    if (insn.in_ >> 4) == KIND_IMM16 or (insn.in_ & 0x0F) == KIND_IMM16:
        words += 1
    return words

def lookup_label(labels, name):
    """First matching definition wins."""
    for label, addr in labels:
        if label == name:
            return addr
    return None

def pass1(lines, filename=None, origin=ORIGIN, exact_labels=False):
    """
    First pass: encode every line and record label definitions.

    Labels take the program counter as advanced by the encoder's returned
    lengths; with exact_labels they take the address the emitter will place
    the next instruction at instead.  A mismatch between the two is warned
    about.  Warnings left over from an earlier run are discarded.
    Returns (instructions, labels, backpatches).
    """
    del warnings_issued[:]
    insns       = []
    labels      = []   # (name, address in words)
    backpatches = []
    pc          = origin   # encoder view
    addr        = origin   # emitter view

    for lineno, raw in enumerate(lines, 1):
        label, mnemonic, operands = split_line(raw)

        if label is not None:
            if lookup_label(labels, label) is not None:
                warn(f"label '{label}' already defined; first definition is used",
                     filename, lineno)
            elif pc != addr and not exact_labels:
                warn(f"label '{label}' defined at word 0x{pc:X} but emitted at "
                     f"word 0x{addr:X} (use --exact-labels to follow emitted "
                     "addresses)", filename, lineno)
            labels.append((label, addr if exact_labels else pc))

        if mnemonic is None:
            continue

        insn, length = encode_line(mnemonic, operands, backpatches, len(insns),
                                   filename, lineno)
        insns.append(insn)
        pc   += length
        addr += emitted_words(insn)

    return insns, labels, backpatches

# ── Pass 2: resolve backpatches ───────────────────────────────────────────────

def pass2(insns, labels, backpatches):
    """Write resolved label addresses into the referencing instructions."""
    for bp in backpatches:
        addr = lookup_label(labels, bp.label)
        if addr is None:
            raise AsmError(f"unknown label: '{bp.label}'", bp.filename, bp.lineno)

        insn = insns[bp.insn_idx]
        if bp.kind == BP_ABS8:
            if not 0 <= addr <= 0xFF:
                raise AsmError(f"label cannot fit in imm8: '{bp.label}' -> {addr}",
                               bp.filename, bp.lineno)
            insn.imm8 = addr
        else:
            insn.imm16 = addr & 0xFFFF
    backpatches.clear()

# ── Emitter ───────────────────────────────────────────────────────────────────

def format_insn(insn, words=False):
    """Hex tokens for one instruction, imm16 included only when emitted."""
    if words:
        tokens = [f'{insn.op:02X}{insn.out:02X}', f'{insn.in_:02X}{insn.imm8:02X}']
    else:
        tokens = [f'{insn.op:02X}', f'{insn.out:02X}',
                  f'{insn.in_:02X}', f'{insn.imm8:02X}']
    if emitted_words(insn) == 3:
        tokens.append(f'{insn.imm16:04X}')
    return tokens

def emit(insns, debug=False, words=False, origin=ORIGIN):
    """
    Serialise the instruction table.

    compact: every token on its own line.
    debug:   '%08x: ' word address then the tokens on one line; the address
             is recomputed here from each instruction's 'in' byte.
    """
    out = []
    pc  = origin
    for insn in insns:
        tokens = format_insn(insn, words)
        if debug:
            out.append(f'{pc:08x}: ' + ' '.join(tokens) + '\n')
        else:
            out.extend(t + '\n' for t in tokens)
        pc += emitted_words(insn)
    return ''.join(out)

def assemble(text, debug=False, words=False, origin=ORIGIN, exact_labels=False,
             filename=None):
    """Run both passes over source text and return the formatted output."""
    insns, labels, backpatches = pass1(text.splitlines(), filename, origin,
                                       exact_labels)
    pass2(insns, labels, backpatches)
    return emit(insns, debug=debug, words=words, origin=origin)

# ── Main ──────────────────────────────────────────────────────────────────────

def _address(text):
    try:
        v = parse_int(text)
    except AsmError as e:
        raise argparse.ArgumentTypeError(e.msg)
    if v is None or v < 0:
        raise argparse.ArgumentTypeError(f"invalid address: '{text}'")
    return v

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Assembler for the 16-register flag-conditional CPU',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__)
    parser.add_argument('input', nargs='?', default='-',
                        help='Assembly source file (default: stdin)')
    parser.add_argument('-o', '--output',  help='Output file (default: stdout)')
    parser.add_argument('-d', '--debug',   action='store_true',
                        help='Address-annotated output, one instruction per line')
    parser.add_argument('-w', '--words',   action='store_true',
                        help='Emit op+out and in+imm8 as 16-bit tokens')
    parser.add_argument('--origin',        type=_address, default=ORIGIN,
                        metavar='ADDR', help='Program origin in words (default: 0)')
    parser.add_argument('--exact-labels',  action='store_true',
                        help='Define labels at the address the emitter places them')
    args = parser.parse_args(argv)

    try:
        if args.input == '-':
            filename = '<stdin>'
            text = sys.stdin.read()
        else:
            filename = args.input
            with open(args.input, 'r') as fh:
                text = fh.read()

        result = assemble(text, debug=args.debug, words=args.words,
                          origin=args.origin, exact_labels=args.exact_labels,
                          filename=filename)

        if args.output:
            with open(args.output, 'w') as fh:
                fh.write(result)
            print(f'Wrote {len(result.splitlines())} lines to {args.output}')
        else:
            sys.stdout.write(result)

        if warnings_issued:
            print(f'{len(warnings_issued)} warning(s).', file=sys.stderr)

    except AsmError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    except (OSError, UnicodeDecodeError) as e:
        print(f'Error: {e}', file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
