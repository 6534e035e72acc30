import argparse
import sys

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import DEBUG, SCREEN_HEIGHT, SCREEN_WIDTH, Chip8, Chip8Error, FatalError


# ******************** STATIC SECTION
# the hex keypad
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F
# is laid on the left side of a QWERTY keyboard
KEY_MAPPINGS = {
    K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
    K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
    K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
    K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
}

CYCLES_PER_SECOND = 600
SCALE = 15
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 emulator")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-s", "--scale", type=int, default=SCALE, help="size in window pixels of a CHIP-8 pixel")
    return parser.parse_args(argv)

def read_rom(path):
    """read the whole ROM file, I/O errors are left to the caller"""
    print(f"Loading ROM: {path}")
    with open(path, mode='rb') as f:
        return f.read()

def new_machine(rom):
    """build a fresh machine with the ROM loaded, there is no partial reset"""
    chip = Chip8()
    chip.load_rom(rom)
    return chip


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def read_pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        p = self.surface.get_at((x * self.scale, y * self.scale))
        return 0 if p == self.background else 1

    def write_pixel(self, x, y, color):
        """
        set a pixel on the screen, being it a foreground pixel or a background one
        the change won't be immediatly visible because it'll require a call to the static method refresh
        """
        pygame.draw.rect(
            self.surface,
            self.background if color==0 else self.foreground,
            (x * self.scale, y * self.scale, self.scale, self.scale)
        )

    def render(self, frame):
        """copy a whole frame buffer onto the window surface"""
        self.surface.fill(self.background)
        for y in range(self.h):
            for x in range(self.w):
                if frame.read_pixel(x, y):
                    self.write_pixel(x, y, 1)
        self.refresh()

    @staticmethod
    def refresh():
        pygame.display.flip()


def handle_event(event, chip):
    """route one pygame event to the keypad, return False when the user asked to quit"""
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == pygame.K_ESCAPE:
            return False
        if event.key in KEY_MAPPINGS:
            chip.keypad[KEY_MAPPINGS[event.key]] = True
    elif event.type == pygame.KEYUP:
        if event.key in KEY_MAPPINGS:
            chip.keypad[KEY_MAPPINGS[event.key]] = False
    return True


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    try:
        rom = read_rom(args.file)
        chip = new_machine(rom)
    except (OSError, Chip8Error) as e:
        sys.exit(f"Error while loading the ROM: {e}")
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(args.file))
    s = Screen(s=args.scale)
    # emulation loop
    run = True
    try:
        while run:
            clock.tick(CYCLES_PER_SECOND)
            for event in pygame.event.get():
                if event.type == pygame.KEYDOWN and event.key == pygame.K_F1:
                    if DEBUG: print("F1 pressed: resetting the machine")
                    try:
                        rom = read_rom(args.file)
                        chip = new_machine(rom)
                    except (OSError, Chip8Error) as e:
                        print(f"Error while reloading the ROM: {e}", file=sys.stderr)
                        run = False
                        break
                elif not handle_event(event, chip):
                    run = False
            if not run:
                break
            chip.cycle()        # emulate one machine cycle (fetch opcode, decode opcode, execute opcode, update timers)
            if chip.draw:
                s.render(chip.screen)
                chip.draw = False
    except FatalError as fe:
        sys.exit(f"********** THE EMULATOR CRASHED ({fe}) WITH THE FOLLOWING STATE\n{chip}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
