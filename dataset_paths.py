import os
import glob
import re
import pandas as pd


# sequence name -> filename pattern (BIDS-like naming)
MP2RAGE_PATTERNS = {
    'UNIT1': r'_UNIT1\.nii(\.gz)?$',
    'INV1': r'_inv-1_.*\.nii(\.gz)?$',
    'INV2': r'_inv-2_.*\.nii(\.gz)?$',
}


def get_mp2rage_paths(datapath='data'):
    """
    Retrieve UNIT1, INV1 and INV2 paths for all subjects (and sessions) in a dataset directory.

    Returns a DataFrame with columns subj_id, session, sequence and path; session is ''
    for datasets without ses-* folders.
    """

    if not os.path.isdir(datapath):
        raise ValueError(f'{datapath} is not an existing folder')

    # derivatives and other non-subject folders are not part of the search
    all_nifti_paths = sorted(glob.glob(os.path.join(datapath, 'sub-*', '**', '*.nii*'), recursive=True))

    groups = {}
    for p in all_nifti_paths:
        relpath = os.path.relpath(p, datapath)
        subj_id = re.match(r'sub-([^/\\_]+)', relpath)
        session = re.search(r'[/\\]ses-([^/\\_]+)', relpath)
        key = (subj_id.group(1), session.group(1) if session else '')
        groups.setdefault(key, []).append(p)

    paths = []
    for (subj_id, session), subj_nifti_paths in groups.items():
        for sequence, pattern in MP2RAGE_PATTERNS.items():
            regex = re.compile(pattern)
            matches = [p for p in subj_nifti_paths if re.search(regex, os.path.basename(p))]
            if len(matches) > 1:
                raise ValueError(f'More than 1 file found for sub-{subj_id} {session} {sequence}: {matches}')
            if len(matches) == 1:
                paths.append([subj_id, session, sequence, matches[0]])

    return pd.DataFrame(paths, columns=['subj_id', 'session', 'sequence', 'path'])


def select_single_path(paths, subj_id, session, sequence):
    path = paths[(paths['subj_id'] == subj_id) & (paths['session'] == session) & (paths['sequence'] == sequence)]['path'].values
    if len(path) == 1:
        return path[0]
    elif len(path) == 0:
        return None
    else:
        raise ValueError(f'More than 1 path found for {subj_id} {session} {sequence}')


def main():
    paths = get_mp2rage_paths()
    print(paths.to_string())

if __name__ == '__main__':
    main()
