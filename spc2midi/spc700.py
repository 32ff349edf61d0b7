"""
SPC700 processor interpreter.

Executes the sound driver's machine code one instruction at a time against a
MachineState. Accesses to the DSPADDR/DSPDATA ports are forwarded to a
ChipObserver; everything the chip does in response is the observer's business.
"""

from typing import Callable, List, Optional

from errors import UnsupportedOpcode
from machine import (
    ChipObserver, MachineState, IPL_ROM, IPL_ROM_ADDRESS,
    REG_CONTROL, REG_DSPADDR, REG_DSPDATA, REG_PORT0, REG_TIMER_TARGET0, REG_TIMER_COUNTER0,
)


# PSW flag bits
FLAG_N = 0x80
FLAG_V = 0x40
FLAG_P = 0x20
FLAG_B = 0x10
FLAG_H = 0x08
FLAG_I = 0x04
FLAG_Z = 0x02
FLAG_C = 0x01

# Base cycle cost per opcode. Taken branches add 2 cycles on top of this.
CYCLE_TABLE = (
    # 0 1 2 3 4 5 6 7 8 9 A B C D E F
    2, 8, 4, 5, 3, 4, 3, 6, 2, 6, 5, 4, 5, 4, 6, 8,  # 0
    2, 8, 4, 5, 4, 5, 5, 6, 5, 5, 6, 5, 2, 2, 4, 6,  # 1
    2, 8, 4, 5, 3, 4, 3, 6, 2, 6, 5, 4, 5, 4, 5, 4,  # 2
    2, 8, 4, 5, 4, 5, 5, 6, 5, 5, 6, 5, 2, 2, 3, 8,  # 3
    2, 8, 4, 5, 3, 4, 3, 6, 2, 6, 4, 4, 5, 4, 6, 6,  # 4
    2, 8, 4, 5, 4, 5, 5, 6, 5, 5, 4, 5, 2, 2, 4, 3,  # 5
    2, 8, 4, 5, 3, 4, 3, 6, 2, 6, 4, 4, 5, 4, 5, 5,  # 6
    2, 8, 4, 5, 4, 5, 5, 6, 5, 5, 5, 5, 2, 2, 3, 6,  # 7
    2, 8, 4, 5, 3, 4, 3, 6, 2, 6, 5, 4, 5, 2, 4, 5,  # 8
    2, 8, 4, 5, 4, 5, 5, 6, 5, 5, 5, 5, 2, 2, 12, 5,  # 9
    3, 8, 4, 5, 3, 4, 3, 6, 2, 6, 4, 4, 5, 2, 4, 4,  # A
    2, 8, 4, 5, 4, 5, 5, 6, 5, 5, 5, 5, 2, 2, 3, 4,  # B
    3, 8, 4, 5, 4, 5, 4, 7, 2, 5, 6, 4, 5, 2, 4, 9,  # C
    2, 8, 4, 5, 5, 6, 6, 7, 4, 5, 5, 5, 2, 2, 6, 3,  # D
    2, 8, 4, 5, 3, 4, 3, 6, 2, 4, 5, 3, 4, 3, 4, 3,  # E
    2, 8, 4, 5, 4, 5, 5, 6, 3, 4, 5, 4, 2, 2, 4, 3,  # F
)

BRANCH_TAKEN_CYCLES = 2

# Opcodes that halt the processor for good
OPCODE_SLEEP = 0xEF
OPCODE_STOP = 0xFF


class SPC700:
    """Cycle-counting SPC700 interpreter."""

    def __init__(self, state: MachineState, observer: ChipObserver):
        self.state = state
        self.observer = observer
        self.opcode_pc = state.pc  # Address of the instruction being executed
        self.opcode_dispatch: List[Optional[Callable[[], Optional[int]]]] = self._build_opcode_dispatch()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def step(self) -> int:
        """Execute one instruction and return the cycles it took."""
        state = self.state
        self.opcode_pc = state.pc
        opcode = self._fetch()
        handler = self.opcode_dispatch[opcode]
        if handler is None:
            state.pc = self.opcode_pc
            if opcode in (OPCODE_SLEEP, OPCODE_STOP):
                raise UnsupportedOpcode(opcode, self.opcode_pc, state.cycles,
                                        reason="processor halted by opcode")
            raise UnsupportedOpcode(opcode, self.opcode_pc, state.cycles)
        cost = CYCLE_TABLE[opcode] + (handler() or 0)
        state.cycles += cost
        return cost

    # ------------------------------------------------------------------
    # Memory access
    # ------------------------------------------------------------------

    def read(self, address: int) -> int:
        address &= 0xFFFF
        if 0xF0 <= address <= 0xFF:
            return self._read_io(address)
        if address >= IPL_ROM_ADDRESS and self.state.control & 0x80:
            return IPL_ROM[address - IPL_ROM_ADDRESS]
        return self.state.ram[address]

    def write(self, address: int, value: int):
        address &= 0xFFFF
        value &= 0xFF
        # I/O writes also land in the underlying RAM
        self.state.ram[address] = value
        if 0xF0 <= address <= 0xFF:
            self._write_io(address, value)

    def _read_io(self, address: int) -> int:
        state = self.state
        if address == REG_DSPADDR:
            return state.dsp_addr
        if address == REG_DSPDATA:
            return self.observer.read_register(state, state.dsp_addr & 0x7F, state.cycles)
        if REG_PORT0 <= address < REG_PORT0 + 4:
            return state.port_in[address - REG_PORT0]
        if address >= REG_TIMER_COUNTER0:
            return state.timers[address - REG_TIMER_COUNTER0].read_counter(state.cycles)
        if address in (0xF8, 0xF9):
            return state.ram[address]
        # TEST, CONTROL and timer targets are write-only
        return 0

    def _write_io(self, address: int, value: int):
        state = self.state
        if address == REG_CONTROL:
            self._write_control(value)
        elif address == REG_DSPADDR:
            state.dsp_addr = value
        elif address == REG_DSPDATA:
            # $80-$FF mirror $00-$7F read-only
            if state.dsp_addr < 0x80:
                self.observer.write_register(state, state.dsp_addr, value, state.cycles)
        elif REG_PORT0 <= address < REG_PORT0 + 4:
            state.port_out[address - REG_PORT0] = value
        elif REG_TIMER_TARGET0 <= address < REG_TIMER_COUNTER0:
            timer = state.timers[address - REG_TIMER_TARGET0]
            timer.run_until(state.cycles)
            timer.target = value if value else 256

    def _write_control(self, value: int):
        state = self.state
        if value & 0x10:
            state.port_in[0] = 0
            state.port_in[1] = 0
        if value & 0x20:
            state.port_in[2] = 0
            state.port_in[3] = 0
        for i, timer in enumerate(state.timers):
            enabled = bool(value & (1 << i))
            if timer.enabled != enabled:
                timer.run_until(state.cycles)
                timer.enabled = enabled
                if enabled:
                    timer.divider = 0
                    timer.counter = 0
        state.control = value

    def _fetch(self) -> int:
        state = self.state
        pc = state.pc
        state.pc = (pc + 1) & 0xFFFF
        return self.read(pc)

    def _fetch_word(self) -> int:
        lo = self._fetch()
        return lo | (self._fetch() << 8)

    def _read_word(self, address: int) -> int:
        return self.read(address) | (self.read(address + 1) << 8)

    def _dp_base(self) -> int:
        return 0x100 if self.state.psw & FLAG_P else 0

    def _read_dp_word(self, offset: int) -> int:
        # The high byte wraps within the direct page
        base = self._dp_base()
        return self.read(base | offset) | (self.read(base | ((offset + 1) & 0xFF)) << 8)

    def _write_dp_word(self, offset: int, value: int):
        base = self._dp_base()
        self.write(base | offset, value & 0xFF)
        self.write(base | ((offset + 1) & 0xFF), (value >> 8) & 0xFF)

    def _push(self, value: int):
        state = self.state
        state.ram[0x100 | state.sp] = value & 0xFF
        state.sp = (state.sp - 1) & 0xFF

    def _pop(self) -> int:
        state = self.state
        state.sp = (state.sp + 1) & 0xFF
        return state.ram[0x100 | state.sp]

    def _push_pc(self):
        pc = self.state.pc
        self._push(pc >> 8)
        self._push(pc & 0xFF)

    def _pop_pc(self):
        lo = self._pop()
        self.state.pc = lo | (self._pop() << 8)

    # ------------------------------------------------------------------
    # Addressing modes (each consumes its operand bytes, returns an address)
    # ------------------------------------------------------------------

    def _addr_dp(self) -> int:
        return self._dp_base() | self._fetch()

    def _addr_dp_x(self) -> int:
        return self._dp_base() | ((self._fetch() + self.state.x) & 0xFF)

    def _addr_dp_y(self) -> int:
        return self._dp_base() | ((self._fetch() + self.state.y) & 0xFF)

    def _addr_abs(self) -> int:
        return self._fetch_word()

    def _addr_abs_x(self) -> int:
        return (self._fetch_word() + self.state.x) & 0xFFFF

    def _addr_abs_y(self) -> int:
        return (self._fetch_word() + self.state.y) & 0xFFFF

    def _addr_ind_x(self) -> int:
        return self._dp_base() | self.state.x

    def _addr_ind_y(self) -> int:
        return self._dp_base() | self.state.y

    def _addr_dp_x_ind(self) -> int:
        # [dp+X]
        return self._read_dp_word((self._fetch() + self.state.x) & 0xFF)

    def _addr_dp_ind_y(self) -> int:
        # [dp]+Y
        return (self._read_dp_word(self._fetch()) + self.state.y) & 0xFFFF

    def _addr_mem_bit(self):
        """mem.b operand: 13-bit address, 3-bit bit number."""
        operand = self._fetch_word()
        return operand & 0x1FFF, operand >> 13

    # ------------------------------------------------------------------
    # Flag helpers
    # ------------------------------------------------------------------

    def _set_nz(self, value: int):
        psw = self.state.psw & ~(FLAG_N | FLAG_Z)
        if value & 0x80:
            psw |= FLAG_N
        if not value & 0xFF:
            psw |= FLAG_Z
        self.state.psw = psw

    def _set_nz16(self, value: int):
        psw = self.state.psw & ~(FLAG_N | FLAG_Z)
        if value & 0x8000:
            psw |= FLAG_N
        if not value & 0xFFFF:
            psw |= FLAG_Z
        self.state.psw = psw

    def _set_flag(self, flag: int, condition):
        if condition:
            self.state.psw |= flag
        else:
            self.state.psw &= ~flag

    def _carry(self) -> int:
        return self.state.psw & FLAG_C

    # ------------------------------------------------------------------
    # ALU
    # ------------------------------------------------------------------

    def _alu_or(self, a: int, b: int) -> int:
        result = a | b
        self._set_nz(result)
        return result

    def _alu_and(self, a: int, b: int) -> int:
        result = a & b
        self._set_nz(result)
        return result

    def _alu_eor(self, a: int, b: int) -> int:
        result = a ^ b
        self._set_nz(result)
        return result

    def _alu_cmp(self, a: int, b: int) -> None:
        result = a - b
        self._set_flag(FLAG_C, result >= 0)
        self._set_nz(result & 0xFF)
        return None

    def _alu_adc(self, a: int, b: int) -> int:
        result = a + b + self._carry()
        self._set_flag(FLAG_C, result > 0xFF)
        self._set_flag(FLAG_V, ~(a ^ b) & (a ^ result) & 0x80)
        self._set_flag(FLAG_H, (a ^ b ^ result) & 0x10)
        result &= 0xFF
        self._set_nz(result)
        return result

    def _alu_sbc(self, a: int, b: int) -> int:
        return self._alu_adc(a, b ^ 0xFF)

    def _alu_asl(self, value: int) -> int:
        self._set_flag(FLAG_C, value & 0x80)
        result = (value << 1) & 0xFF
        self._set_nz(result)
        return result

    def _alu_rol(self, value: int) -> int:
        result = ((value << 1) | self._carry()) & 0xFF
        self._set_flag(FLAG_C, value & 0x80)
        self._set_nz(result)
        return result

    def _alu_lsr(self, value: int) -> int:
        self._set_flag(FLAG_C, value & 0x01)
        result = value >> 1
        self._set_nz(result)
        return result

    def _alu_ror(self, value: int) -> int:
        result = (value >> 1) | (self._carry() << 7)
        self._set_flag(FLAG_C, value & 0x01)
        self._set_nz(result)
        return result

    def _alu_dec(self, value: int) -> int:
        result = (value - 1) & 0xFF
        self._set_nz(result)
        return result

    def _alu_inc(self, value: int) -> int:
        result = (value + 1) & 0xFF
        self._set_nz(result)
        return result

    def _branch(self, condition) -> int:
        offset = self._fetch()
        if condition:
            if offset & 0x80:
                offset -= 0x100
            self.state.pc = (self.state.pc + offset) & 0xFFFF
            return BRANCH_TAKEN_CYCLES
        return 0

    # ------------------------------------------------------------------
    # Dispatch table construction
    # ------------------------------------------------------------------

    def _build_opcode_dispatch(self) -> List[Optional[Callable[[], Optional[int]]]]:
        """Build the 256-entry opcode handler table.

        Regular instruction families are generated from their row/column
        layout in the opcode map; the rest are registered one by one.
        SLEEP and STOP stay unmapped.
        """
        table: List[Optional[Callable[[], Optional[int]]]] = [None] * 256

        # OR/AND/EOR/CMP/ADC/SBC occupy rows 0x0-0xB of columns 4-9
        alu_ops = [self._alu_or, self._alu_and, self._alu_eor,
                   self._alu_cmp, self._alu_adc, self._alu_sbc]
        for i, op in enumerate(alu_ops):
            row = i * 0x20
            table[row + 0x04] = self._make_alu_a(op, self._addr_dp)
            table[row + 0x05] = self._make_alu_a(op, self._addr_abs)
            table[row + 0x06] = self._make_alu_a(op, self._addr_ind_x)
            table[row + 0x07] = self._make_alu_a(op, self._addr_dp_x_ind)
            table[row + 0x08] = self._make_alu_a_imm(op)
            table[row + 0x09] = self._make_alu_dp_dp(op)
            table[row + 0x14] = self._make_alu_a(op, self._addr_dp_x)
            table[row + 0x15] = self._make_alu_a(op, self._addr_abs_x)
            table[row + 0x16] = self._make_alu_a(op, self._addr_abs_y)
            table[row + 0x17] = self._make_alu_a(op, self._addr_dp_ind_y)
            table[row + 0x18] = self._make_alu_dp_imm(op)
            table[row + 0x19] = self._make_alu_ind_ind(op)

        # ASL/ROL/LSR/ROR/DEC/INC occupy rows 0x0-0xB of columns B-C
        rmw_ops = [self._alu_asl, self._alu_rol, self._alu_lsr,
                   self._alu_ror, self._alu_dec, self._alu_inc]
        for i, op in enumerate(rmw_ops):
            row = i * 0x20
            table[row + 0x0B] = self._make_rmw(op, self._addr_dp)
            table[row + 0x1B] = self._make_rmw(op, self._addr_dp_x)
            table[row + 0x0C] = self._make_rmw(op, self._addr_abs)
            table[row + 0x1C] = self._make_rmw_a(op)

        for n in range(16):
            table[(n << 4) | 0x01] = self._make_tcall(n)
        for bit in range(8):
            table[(bit << 5) | 0x02] = self._make_set1(bit, True)
            table[(bit << 5) | 0x12] = self._make_set1(bit, False)
            table[(bit << 5) | 0x03] = self._make_bbs(bit, True)
            table[(bit << 5) | 0x13] = self._make_bbs(bit, False)

        # Conditional branches: (flag, branch when set)
        branches = {
            0x10: (FLAG_N, False), 0x30: (FLAG_N, True),
            0x50: (FLAG_V, False), 0x70: (FLAG_V, True),
            0x90: (FLAG_C, False), 0xB0: (FLAG_C, True),
            0xD0: (FLAG_Z, False), 0xF0: (FLAG_Z, True),
        }
        for opcode, (flag, when_set) in branches.items():
            table[opcode] = self._make_flag_branch(flag, when_set)

        # MOV A <- memory
        table[0xE4] = self._make_load('a', self._addr_dp)
        table[0xF4] = self._make_load('a', self._addr_dp_x)
        table[0xE5] = self._make_load('a', self._addr_abs)
        table[0xF5] = self._make_load('a', self._addr_abs_x)
        table[0xE6] = self._make_load('a', self._addr_ind_x)
        table[0xF6] = self._make_load('a', self._addr_abs_y)
        table[0xE7] = self._make_load('a', self._addr_dp_x_ind)
        table[0xF7] = self._make_load('a', self._addr_dp_ind_y)
        table[0xF8] = self._make_load('x', self._addr_dp)
        table[0xF9] = self._make_load('x', self._addr_dp_y)
        table[0xE9] = self._make_load('x', self._addr_abs)
        table[0xEB] = self._make_load('y', self._addr_dp)
        table[0xFB] = self._make_load('y', self._addr_dp_x)
        table[0xEC] = self._make_load('y', self._addr_abs)

        # MOV memory <- register
        table[0xC4] = self._make_store('a', self._addr_dp)
        table[0xD4] = self._make_store('a', self._addr_dp_x)
        table[0xC5] = self._make_store('a', self._addr_abs)
        table[0xD5] = self._make_store('a', self._addr_abs_x)
        table[0xC6] = self._make_store('a', self._addr_ind_x)
        table[0xD6] = self._make_store('a', self._addr_abs_y)
        table[0xC7] = self._make_store('a', self._addr_dp_x_ind)
        table[0xD7] = self._make_store('a', self._addr_dp_ind_y)
        table[0xD8] = self._make_store('x', self._addr_dp)
        table[0xD9] = self._make_store('x', self._addr_dp_y)
        table[0xC9] = self._make_store('x', self._addr_abs)
        table[0xCB] = self._make_store('y', self._addr_dp)
        table[0xDB] = self._make_store('y', self._addr_dp_x)
        table[0xCC] = self._make_store('y', self._addr_abs)

        # MOV register <- immediate
        table[0xE8] = self._make_load_imm('a')
        table[0xCD] = self._make_load_imm('x')
        table[0x8D] = self._make_load_imm('y')

        # Register transfers (MOV SP,X is the only one that leaves flags alone)
        table[0x5D] = self._make_transfer('a', 'x')
        table[0x7D] = self._make_transfer('x', 'a')
        table[0xDD] = self._make_transfer('y', 'a')
        table[0xFD] = self._make_transfer('a', 'y')
        table[0x9D] = self._make_transfer('sp', 'x')
        table[0xBD] = self._op_mov_sp_x

        # Compare index registers
        table[0xC8] = self._make_cmp_reg_imm('x')
        table[0xAD] = self._make_cmp_reg_imm('y')
        table[0x3E] = self._make_cmp_reg('x', self._addr_dp)
        table[0x1E] = self._make_cmp_reg('x', self._addr_abs)
        table[0x7E] = self._make_cmp_reg('y', self._addr_dp)
        table[0x5E] = self._make_cmp_reg('y', self._addr_abs)

        # Increment/decrement index registers
        table[0x1D] = self._make_step_reg('x', -1)
        table[0x3D] = self._make_step_reg('x', 1)
        table[0xDC] = self._make_step_reg('y', -1)
        table[0xFC] = self._make_step_reg('y', 1)

        # Stack
        table[0x0D] = self._op_push_psw
        table[0x2D] = self._make_push('a')
        table[0x4D] = self._make_push('x')
        table[0x6D] = self._make_push('y')
        table[0x8E] = self._op_pop_psw
        table[0xAE] = self._make_pop('a')
        table[0xCE] = self._make_pop('x')
        table[0xEE] = self._make_pop('y')

        # Flags
        table[0x20] = self._make_flag_op(FLAG_P, False)
        table[0x40] = self._make_flag_op(FLAG_P, True)
        table[0x60] = self._make_flag_op(FLAG_C, False)
        table[0x80] = self._make_flag_op(FLAG_C, True)
        table[0xA0] = self._make_flag_op(FLAG_I, True)
        table[0xC0] = self._make_flag_op(FLAG_I, False)
        table[0xE0] = self._make_flag_op(FLAG_V | FLAG_H, False)
        table[0xED] = self._op_notc

        # Everything else
        single = {
            0x00: self._op_nop,
            0x0A: self._make_bit_to_carry('or', False),
            0x2A: self._make_bit_to_carry('or', True),
            0x4A: self._make_bit_to_carry('and', False),
            0x6A: self._make_bit_to_carry('and', True),
            0x8A: self._make_bit_to_carry('eor', False),
            0xAA: self._make_bit_to_carry('mov', False),
            0xCA: self._op_mov1_mem_c,
            0xEA: self._op_not1,
            0x0E: self._op_tset1,
            0x4E: self._op_tclr1,
            0x1A: self._op_decw,
            0x3A: self._op_incw,
            0x5A: self._op_cmpw,
            0x7A: self._op_addw,
            0x9A: self._op_subw,
            0xBA: self._op_movw_ya_dp,
            0xDA: self._op_movw_dp_ya,
            0xFA: self._op_mov_dp_dp,
            0x8F: self._op_mov_dp_imm,
            0xAF: self._op_mov_ind_x_inc_a,
            0xBF: self._op_mov_a_ind_x_inc,
            0x2E: self._make_cbne(self._addr_dp),
            0xDE: self._make_cbne(self._addr_dp_x),
            0x6E: self._op_dbnz_dp,
            0xFE: self._op_dbnz_y,
            0x2F: self._op_bra,
            0x3F: self._op_call,
            0x4F: self._op_pcall,
            0x0F: self._op_brk,
            0x6F: self._op_ret,
            0x7F: self._op_reti,
            0x5F: self._op_jmp_abs,
            0x1F: self._op_jmp_abs_x_ind,
            0x9F: self._op_xcn,
            0xCF: self._op_mul,
            0x9E: self._op_div,
            0xDF: self._op_daa,
            0xBE: self._op_das,
        }
        for opcode, handler in single.items():
            table[opcode] = handler

        return table

    # ------------------------------------------------------------------
    # Handler factories
    # ------------------------------------------------------------------

    def _make_alu_a(self, op, addressing):
        def handler():
            state = self.state
            result = op(state.a, self.read(addressing()))
            if result is not None:
                state.a = result
        return handler

    def _make_alu_a_imm(self, op):
        def handler():
            state = self.state
            result = op(state.a, self._fetch())
            if result is not None:
                state.a = result
        return handler

    def _make_alu_dp_dp(self, op):
        # Operand order in the instruction stream: source, then destination
        def handler():
            src = self.read(self._addr_dp())
            dst = self._addr_dp()
            result = op(self.read(dst), src)
            if result is not None:
                self.write(dst, result)
        return handler

    def _make_alu_dp_imm(self, op):
        # Operand order in the instruction stream: immediate, then destination
        def handler():
            imm = self._fetch()
            dst = self._addr_dp()
            result = op(self.read(dst), imm)
            if result is not None:
                self.write(dst, result)
        return handler

    def _make_alu_ind_ind(self, op):
        # (X),(Y)
        def handler():
            src = self.read(self._addr_ind_y())
            dst = self._addr_ind_x()
            result = op(self.read(dst), src)
            if result is not None:
                self.write(dst, result)
        return handler

    def _make_rmw(self, op, addressing):
        def handler():
            address = addressing()
            self.write(address, op(self.read(address)))
        return handler

    def _make_rmw_a(self, op):
        def handler():
            self.state.a = op(self.state.a)
        return handler

    def _make_load(self, register: str, addressing):
        def handler():
            value = self.read(addressing())
            setattr(self.state, register, value)
            self._set_nz(value)
        return handler

    def _make_load_imm(self, register: str):
        def handler():
            value = self._fetch()
            setattr(self.state, register, value)
            self._set_nz(value)
        return handler

    def _make_store(self, register: str, addressing):
        def handler():
            self.write(addressing(), getattr(self.state, register))
        return handler

    def _make_transfer(self, source: str, dest: str):
        def handler():
            value = getattr(self.state, source)
            setattr(self.state, dest, value)
            self._set_nz(value)
        return handler

    def _make_cmp_reg_imm(self, register: str):
        def handler():
            self._alu_cmp(getattr(self.state, register), self._fetch())
        return handler

    def _make_cmp_reg(self, register: str, addressing):
        def handler():
            self._alu_cmp(getattr(self.state, register), self.read(addressing()))
        return handler

    def _make_step_reg(self, register: str, delta: int):
        def handler():
            value = (getattr(self.state, register) + delta) & 0xFF
            setattr(self.state, register, value)
            self._set_nz(value)
        return handler

    def _make_push(self, register: str):
        def handler():
            self._push(getattr(self.state, register))
        return handler

    def _make_pop(self, register: str):
        def handler():
            setattr(self.state, register, self._pop())
        return handler

    def _make_flag_op(self, flags: int, set_flags: bool):
        def handler():
            if set_flags:
                self.state.psw |= flags
            else:
                self.state.psw &= ~flags
        return handler

    def _make_flag_branch(self, flag: int, when_set: bool):
        def handler():
            return self._branch(bool(self.state.psw & flag) == when_set)
        return handler

    def _make_tcall(self, n: int):
        vector = 0xFFDE - 2 * n

        def handler():
            self._push_pc()
            self.state.pc = self._read_word(vector)
        return handler

    def _make_set1(self, bit: int, set_bit: bool):
        mask = 1 << bit

        def handler():
            address = self._addr_dp()
            value = self.read(address)
            self.write(address, value | mask if set_bit else value & ~mask)
        return handler

    def _make_bbs(self, bit: int, when_set: bool):
        mask = 1 << bit

        def handler():
            value = self.read(self._addr_dp())
            return self._branch(bool(value & mask) == when_set)
        return handler

    def _make_bit_to_carry(self, operation: str, invert: bool):
        def handler():
            address, bit = self._addr_mem_bit()
            value = (self.read(address) >> bit) & 1
            if invert:
                value ^= 1
            carry = self._carry()
            if operation == 'or':
                carry |= value
            elif operation == 'and':
                carry &= value
            elif operation == 'eor':
                carry ^= value
            else:
                carry = value
            self._set_flag(FLAG_C, carry)
        return handler

    def _make_cbne(self, addressing):
        def handler():
            value = self.read(addressing())
            return self._branch(self.state.a != value)
        return handler

    # ------------------------------------------------------------------
    # Individual instructions
    # ------------------------------------------------------------------

    def _op_nop(self):
        pass

    def _op_mov_sp_x(self):
        self.state.sp = self.state.x

    def _op_push_psw(self):
        self._push(self.state.psw)

    def _op_pop_psw(self):
        self.state.psw = self._pop()

    def _op_notc(self):
        self.state.psw ^= FLAG_C

    def _op_mov1_mem_c(self):
        address, bit = self._addr_mem_bit()
        value = self.read(address)
        if self._carry():
            value |= 1 << bit
        else:
            value &= ~(1 << bit)
        self.write(address, value)

    def _op_not1(self):
        address, bit = self._addr_mem_bit()
        self.write(address, self.read(address) ^ (1 << bit))

    def _op_tset1(self):
        address = self._addr_abs()
        value = self.read(address)
        self._set_nz((self.state.a - value) & 0xFF)
        self.write(address, value | self.state.a)

    def _op_tclr1(self):
        address = self._addr_abs()
        value = self.read(address)
        self._set_nz((self.state.a - value) & 0xFF)
        self.write(address, value & ~self.state.a)

    def _ya(self) -> int:
        return (self.state.y << 8) | self.state.a

    def _set_ya(self, value: int):
        self.state.a = value & 0xFF
        self.state.y = (value >> 8) & 0xFF

    def _op_decw(self):
        offset = self._fetch()
        value = (self._read_dp_word(offset) - 1) & 0xFFFF
        self._write_dp_word(offset, value)
        self._set_nz16(value)

    def _op_incw(self):
        offset = self._fetch()
        value = (self._read_dp_word(offset) + 1) & 0xFFFF
        self._write_dp_word(offset, value)
        self._set_nz16(value)

    def _op_cmpw(self):
        result = self._ya() - self._read_dp_word(self._fetch())
        self._set_flag(FLAG_C, result >= 0)
        self._set_nz16(result & 0xFFFF)

    def _op_addw(self):
        ya = self._ya()
        word = self._read_dp_word(self._fetch())
        result = ya + word
        self._set_flag(FLAG_C, result > 0xFFFF)
        self._set_flag(FLAG_V, ~(ya ^ word) & (ya ^ result) & 0x8000)
        self._set_flag(FLAG_H, (ya ^ word ^ result) & 0x1000)
        result &= 0xFFFF
        self._set_ya(result)
        self._set_nz16(result)

    def _op_subw(self):
        ya = self._ya()
        word = self._read_dp_word(self._fetch())
        result = ya - word
        self._set_flag(FLAG_C, result >= 0)
        self._set_flag(FLAG_V, (ya ^ word) & (ya ^ result) & 0x8000)
        self._set_flag(FLAG_H, not (ya ^ word ^ result) & 0x1000)
        result &= 0xFFFF
        self._set_ya(result)
        self._set_nz16(result)

    def _op_movw_ya_dp(self):
        value = self._read_dp_word(self._fetch())
        self._set_ya(value)
        self._set_nz16(value)

    def _op_movw_dp_ya(self):
        self._write_dp_word(self._fetch(), self._ya())

    def _op_mov_dp_dp(self):
        value = self.read(self._addr_dp())
        self.write(self._addr_dp(), value)

    def _op_mov_dp_imm(self):
        value = self._fetch()
        self.write(self._addr_dp(), value)

    def _op_mov_ind_x_inc_a(self):
        state = self.state
        self.write(self._addr_ind_x(), state.a)
        state.x = (state.x + 1) & 0xFF

    def _op_mov_a_ind_x_inc(self):
        state = self.state
        state.a = self.read(self._addr_ind_x())
        state.x = (state.x + 1) & 0xFF
        self._set_nz(state.a)

    def _op_dbnz_dp(self):
        address = self._addr_dp()
        value = (self.read(address) - 1) & 0xFF
        self.write(address, value)
        return self._branch(value != 0)

    def _op_dbnz_y(self):
        state = self.state
        state.y = (state.y - 1) & 0xFF
        return self._branch(state.y != 0)

    def _op_bra(self):
        self._branch(True)
        # Base cost already includes the taken branch

    def _op_call(self):
        target = self._fetch_word()
        self._push_pc()
        self.state.pc = target

    def _op_pcall(self):
        target = 0xFF00 | self._fetch()
        self._push_pc()
        self.state.pc = target

    def _op_brk(self):
        self._push_pc()
        self._push(self.state.psw)
        self.state.psw = (self.state.psw | FLAG_B) & ~FLAG_I
        self.state.pc = self._read_word(0xFFDE)

    def _op_ret(self):
        self._pop_pc()

    def _op_reti(self):
        self.state.psw = self._pop()
        self._pop_pc()

    def _op_jmp_abs(self):
        self.state.pc = self._fetch_word()

    def _op_jmp_abs_x_ind(self):
        self.state.pc = self._read_word(self._addr_abs_x())

    def _op_xcn(self):
        state = self.state
        state.a = ((state.a >> 4) | (state.a << 4)) & 0xFF
        self._set_nz(state.a)

    def _op_mul(self):
        state = self.state
        self._set_ya(state.y * state.a)
        self._set_nz(state.y)

    def _op_div(self):
        state = self.state
        ya = self._ya()
        x = state.x
        y = state.y
        self._set_flag(FLAG_V, y >= x)
        self._set_flag(FLAG_H, (y & 0x0F) >= (x & 0x0F))
        if y < x * 2:
            quotient = ya // x
            remainder = ya - quotient * x
        else:
            # Hardware result when the quotient does not fit in 9 bits
            quotient = 255 - (ya - x * 0x200) // (256 - x)
            remainder = x + (ya - x * 0x200) % (256 - x)
        state.a = quotient & 0xFF
        state.y = remainder & 0xFF
        self._set_nz(state.a)

    def _op_daa(self):
        state = self.state
        a = state.a
        if a > 0x99 or state.psw & FLAG_C:
            a += 0x60
            state.psw |= FLAG_C
        if (a & 0x0F) > 9 or state.psw & FLAG_H:
            a += 0x06
        state.a = a & 0xFF
        self._set_nz(state.a)

    def _op_das(self):
        state = self.state
        a = state.a
        if a > 0x99 or not state.psw & FLAG_C:
            a -= 0x60
            state.psw &= ~FLAG_C
        if (a & 0x0F) > 9 or not state.psw & FLAG_H:
            a -= 0x06
        state.a = a & 0xFF
        self._set_nz(state.a)
